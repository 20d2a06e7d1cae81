"""
Two-Factor Authentication Router

Endpoints:
- GET /auth/2fa - Current 2FA status
- POST /auth/2fa/setup/start - Save a phone number and send a first code
- POST /auth/2fa/setup/verify - Confirm the code and enable 2FA
- POST /auth/2fa/send - Send a new code
- POST /auth/2fa/verify - Verify a code
- POST /auth/2fa/disable - Turn 2FA off (requires a current code)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import CurrentUser, get_current_user
from app.core.database import get_db
from app.modules.telephony.dependencies import get_call_dispatcher, get_provider
from app.modules.telephony.dispatcher import CallDispatcher
from app.modules.telephony.errors import TelephonyConfigurationError
from app.modules.telephony.phone import mask_phone_number
from app.modules.telephony.provider import TelephonyProvider
from app.modules.two_factor import service
from app.modules.two_factor.schemas import (
    TwoFactorSendRequest,
    TwoFactorSendResponse,
    TwoFactorSetupStartRequest,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from app.modules.two_factor.service import (
    InvalidCodeError,
    RateLimitExceededError,
    SendResult,
    TwoFactorError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(e: TwoFactorError | TelephonyConfigurationError) -> HTTPException:
    headers = None
    if isinstance(e, RateLimitExceededError):
        headers = {"Retry-After": str(e.retry_after_seconds)}
    return HTTPException(
        status_code=e.status_code,
        detail={"error": e.error_code, "message": e.message},
        headers=headers,
    )


def _send_response(result: SendResult) -> TwoFactorSendResponse:
    return TwoFactorSendResponse(
        method=result.method,
        masked_destination=result.masked_destination,
        expires_in_seconds=result.expires_in_seconds,
    )


@router.get("", response_model=TwoFactorStatusResponse)
async def get_two_factor_status(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> TwoFactorStatusResponse:
    try:
        record = await service.get_status(db, user.id)
    except TwoFactorError as e:
        raise _error(e) from e

    return TwoFactorStatusResponse(
        enabled=record.is_two_factor_enabled,
        method=record.two_factor_method,
        masked_destination=(
            mask_phone_number(record.two_factor_phone) if record.two_factor_phone else None
        ),
    )


@router.post("/setup/start", response_model=TwoFactorSendResponse)
async def start_setup(
    data: TwoFactorSetupStartRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
    dispatcher: CallDispatcher = Depends(get_call_dispatcher),
) -> TwoFactorSendResponse:
    """
    Save the phone number codes go to and send a code to confirm it.

    Raises:
        HTTPException 400: Invalid phone number
        HTTPException 409: 2FA is already enabled
        HTTPException 429: Too many codes requested
        HTTPException 502/503: The code couldn't be delivered
    """
    try:
        result = await service.start_setup(
            db, provider, dispatcher, user.id, data.phone_number, data.method
        )
    except (TwoFactorError, TelephonyConfigurationError) as e:
        raise _error(e) from e

    return _send_response(result)


@router.post("/setup/verify", response_model=TwoFactorVerifyResponse)
async def complete_setup(
    data: TwoFactorVerifyRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> TwoFactorVerifyResponse:
    """Enable 2FA after the setup code is confirmed."""
    try:
        await service.complete_setup(db, user.id, data.code)
    except TwoFactorError as e:
        raise _error(e) from e

    return TwoFactorVerifyResponse()


@router.post("/send", response_model=TwoFactorSendResponse)
async def send_code(
    data: TwoFactorSendRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: TelephonyProvider = Depends(get_provider),
    dispatcher: CallDispatcher = Depends(get_call_dispatcher),
) -> TwoFactorSendResponse:
    try:
        result = await service.send_code(db, provider, dispatcher, user.id, data.method)
    except (TwoFactorError, TelephonyConfigurationError) as e:
        raise _error(e) from e

    return _send_response(result)


@router.post("/verify", response_model=TwoFactorVerifyResponse)
async def verify_code(
    data: TwoFactorVerifyRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> TwoFactorVerifyResponse:
    """A code verifies once. Wrong codes count toward the attempt limit."""
    if not await service.verify_code(db, user.id, data.code):
        raise _error(InvalidCodeError())

    return TwoFactorVerifyResponse()


@router.post("/disable", status_code=status.HTTP_204_NO_CONTENT)
async def disable(
    data: TwoFactorVerifyRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        await service.disable(db, user.id, data.code)
    except TwoFactorError as e:
        raise _error(e) from e
