"""
Authentication and Authorization Module

Provides authentication dependencies for the application-facing telephony
and 2FA endpoints. Tokens are issued by the portal's login flow; this module
only validates them.

The public Twilio webhook endpoints do NOT use these dependencies - they are
authorized by per-call webhook tokens and request signatures instead.

SECURITY NOTE:
- Development mode test tokens are ONLY accepted when PYTHON_ENV=development
- The is_production check provides an additional safety layer
"""

import logging
import os
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.security import decode_token

logger = logging.getLogger(__name__)

security = HTTPBearer(
    auto_error=True,
    description="JWT Bearer token for authentication",
)

# Roles allowed to place robocalls and manage the recording library
COMMUNICATION_ROLES = frozenset({"super_admin", "school_admin", "principal", "office_staff"})


@dataclass
class CurrentUser:
    """
    Represents an authenticated portal user.

    Populated from JWT claims after token validation.
    """

    id: str
    email: str
    role: str
    name: str | None = None

    def __str__(self) -> str:
        return f"CurrentUser(id={self.id}, role={self.role})"


def _is_dev_mode_safe() -> bool:
    """
    Check if development test tokens may be accepted.

    Requires settings.is_development, not settings.is_production, and a
    PYTHON_ENV environment variable that is neither production nor staging.
    """
    env_var = os.getenv("PYTHON_ENV", "").lower()

    is_safe = (
        settings.is_development
        and not settings.is_production
        and env_var != "production"
        and env_var != "staging"
    )

    if is_safe:
        logger.warning(
            "SECURITY: Development auth mode is ENABLED. This MUST NOT be used in production!"
        )

    return is_safe


_DEVELOPMENT_MODE = _is_dev_mode_safe()

_DEV_USER = CurrentUser(
    id="00000000-0000-0000-0000-000000000001",
    email="admin@school.dev",
    role="school_admin",
    name="Development Admin",
)


def _unauthorized(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _validate_jwt_token(token: str) -> CurrentUser:
    """
    Validate a JWT and extract user claims.

    Raises:
        HTTPException 401: If token is invalid, expired or missing claims
    """
    if _DEVELOPMENT_MODE and token in ("dev-token", "test-token"):
        logger.debug("Development mode: Using test token")
        return _DEV_USER

    payload = decode_token(token)

    if payload is None:
        logger.warning("Invalid or expired JWT token")
        raise _unauthorized("INVALID_TOKEN", "Invalid or expired authentication token.")

    if payload.get("type", "access") != "access":
        logger.warning(f"Invalid token type: {payload.get('type')}")
        raise _unauthorized("INVALID_TOKEN_TYPE", "This endpoint requires an access token.")

    try:
        user_id = str(UUID(payload["sub"]))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Invalid token claims: {e}")
        raise _unauthorized(
            "INVALID_TOKEN_CLAIMS", "Token contains invalid or missing claims."
        ) from e

    return CurrentUser(
        id=user_id,
        email=payload.get("email", ""),
        role=payload.get("role", ""),
        name=payload.get("name"),
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """
    FastAPI dependency that validates the bearer token and returns the user.

    The user id is also stored on ``request.state.user_id`` so rate-limit key
    functions can scope limits per user.
    """
    user = await _validate_jwt_token(credentials.credentials)
    request.state.user_id = user.id
    logger.debug(f"Authenticated user: {user.id}")
    return user


async def get_communications_user(
    user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Dependency for endpoints that place robocalls or manage recordings.

    Raises:
        HTTPException 403: If the user's role may not send communications
    """
    if user.role not in COMMUNICATION_ROLES:
        logger.warning(f"Access denied: user {user.id} has role '{user.role}'")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "COMMUNICATIONS_ACCESS_REQUIRED",
                "message": "You do not have permission to send communications.",
            },
        )
    return user


__all__ = [
    "COMMUNICATION_ROLES",
    "CurrentUser",
    "get_current_user",
    "get_communications_user",
]
