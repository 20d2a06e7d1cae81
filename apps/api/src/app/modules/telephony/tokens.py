"""
Webhook Token Store

Expiring credentials that authorize Twilio's callbacks to the public webhook
endpoints.

Security:
- Tokens carry 256 bits of entropy (secrets.token_hex(32))
- Only the SHA-256 hash is persisted; a database read doesn't expose
  usable callback URLs
- Each token is bound to one purpose (instruction fetch or recording status)
  and optionally to one call-to-record session
- Validation is a pure read: it never deletes, refreshes or extends a token,
  so Twilio retries of the same callback keep working until expiry
- Token values are never logged

Every method takes the caller's session and commits its own write, so a
token is visible to other API instances before the call is placed.
"""

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import hash_secret
from app.modules.telephony.models import WebhookToken, WebhookTokenPurpose

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class WebhookTokenStore:
    """
    Mint, validate and expire webhook tokens.

    Args:
        clock: Returns the current time; injectable for tests
        ttl: Token lifetime (defaults to settings.webhook_token_ttl_minutes)
    """

    def __init__(self, clock: Clock = utc_now, ttl: timedelta | None = None):
        self._clock = clock
        self._ttl = ttl or timedelta(minutes=settings.webhook_token_ttl_minutes)

    async def mint(
        self,
        db: AsyncSession,
        purpose: WebhookTokenPurpose = WebhookTokenPurpose.INSTRUCTION,
        *,
        call_sid: str | None = None,
        session_id: str | None = None,
        ttl: timedelta | None = None,
    ) -> str:
        """
        Create and persist a new token.

        Returns:
            The plain token, to be embedded in a callback URL
        """
        token = secrets.token_hex(TOKEN_BYTES)
        db.add(
            WebhookToken(
                token_hash=hash_secret(token),
                purpose=purpose,
                call_sid=call_sid,
                session_id=session_id,
                expires_at=self._clock() + (ttl or self._ttl),
            )
        )
        await db.commit()

        logger.debug(f"Minted {purpose.value} webhook token (session={session_id})")
        return token

    async def lookup(self, db: AsyncSession, token: str | None) -> WebhookToken | None:
        """Return the token's row if it exists and hasn't expired."""
        if not token:
            return None

        result = await db.execute(
            select(WebhookToken).where(
                WebhookToken.token_hash == hash_secret(token),
                WebhookToken.expires_at > self._clock(),
            )
        )
        return result.scalar_one_or_none()

    async def validate(
        self,
        db: AsyncSession,
        token: str | None,
        purpose: WebhookTokenPurpose | None = None,
        session_id: str | None = None,
    ) -> bool:
        """
        Check a token presented by a callback.

        True iff the token exists, hasn't expired, and (when given) matches the
        expected purpose and session. Safe to call any number of times.
        """
        record = await self.lookup(db, token)
        if record is None:
            return False
        if purpose is not None and record.purpose != purpose:
            return False
        if session_id is not None and record.session_id != session_id:
            return False
        return True

    async def attach_call_sid(self, db: AsyncSession, token: str, call_sid: str) -> None:
        """
        Record the Twilio call SID against a token.

        Best effort: a failure is logged and leaves the token valid.
        """
        try:
            await db.execute(
                update(WebhookToken)
                .where(WebhookToken.token_hash == hash_secret(token))
                .values(call_sid=call_sid),
                execution_options={"synchronize_session": False},
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(f"Could not attach call {call_sid} to webhook token: {e}")

    async def delete(self, db: AsyncSession, token: str) -> None:
        """Remove a token. Deleting a token that doesn't exist is a no-op."""
        await db.execute(
            delete(WebhookToken).where(WebhookToken.token_hash == hash_secret(token)),
            execution_options={"synchronize_session": False},
        )
        await db.commit()

    async def sweep_expired(self, db: AsyncSession) -> int:
        """
        Delete every token whose expiry has passed.

        Idempotent and safe to run concurrently from several instances.

        Returns:
            Number of tokens deleted by this call
        """
        result = await db.execute(
            delete(WebhookToken).where(WebhookToken.expires_at <= self._clock()),
            execution_options={"synchronize_session": False},
        )
        await db.commit()
        return result.rowcount or 0


__all__ = ["Clock", "WebhookTokenStore", "utc_now"]
