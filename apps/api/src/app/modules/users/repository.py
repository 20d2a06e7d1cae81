"""
User Repository

Database operations for users and their two-factor challenge state.

Challenge consumption and failure counting are single conditional UPDATE
statements so concurrent verify requests against different API instances
cannot both succeed with the same code.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.users.models import TwoFactorMethod, User

logger = logging.getLogger(__name__)

# Bulk updates bypass the identity map; reads use populate_existing instead.
_NO_SYNC = {"synchronize_session": False}


class UserRepository:
    """Repository for user database operations."""

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: str | UUID) -> User | None:
        """
        Get a user by ID.

        Args:
            db: Database session
            user_id: User UUID

        Returns:
            User instance or None if not found
        """
        result = await db.execute(
            select(User)
            .where(User.id == str(user_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def set_two_factor_destination(
        db: AsyncSession,
        user_id: str,
        phone: str,
        method: TwoFactorMethod,
    ) -> None:
        """Record where codes are delivered. Does not enable 2FA."""
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(two_factor_phone=phone, two_factor_method=method),
            execution_options=_NO_SYNC,
        )
        await db.commit()

    @staticmethod
    async def store_two_factor_challenge(
        db: AsyncSession,
        user_id: str,
        code_hash: str,
        expires_at: datetime,
    ) -> None:
        """Replace any outstanding challenge and reset the failure counter."""
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                two_factor_code_hash=code_hash,
                two_factor_code_expires_at=expires_at,
                two_factor_failed_attempts=0,
            ),
            execution_options=_NO_SYNC,
        )
        await db.commit()

    @staticmethod
    async def consume_two_factor_challenge(
        db: AsyncSession,
        user_id: str,
        code_hash: str,
        now: datetime,
    ) -> bool:
        """
        Clear the challenge if it matches and hasn't expired.

        Returns:
            True if exactly this call consumed the challenge
        """
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.two_factor_code_hash == code_hash,
                User.two_factor_code_expires_at > now,
            )
            .values(
                two_factor_code_hash=None,
                two_factor_code_expires_at=None,
                two_factor_failed_attempts=0,
            ),
            execution_options=_NO_SYNC,
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def record_failed_attempt(
        db: AsyncSession,
        user_id: str,
        max_attempts: int,
    ) -> int:
        """
        Count a wrong code and invalidate the challenge at ``max_attempts``.

        Returns:
            The failure count after this attempt
        """
        await db.execute(
            update(User)
            .where(User.id == user_id, User.two_factor_code_hash.is_not(None))
            .values(two_factor_failed_attempts=User.two_factor_failed_attempts + 1),
            execution_options=_NO_SYNC,
        )
        result = await db.execute(
            select(User.two_factor_failed_attempts).where(User.id == user_id)
        )
        attempts = result.scalar_one_or_none() or 0

        if attempts >= max_attempts:
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(two_factor_code_hash=None, two_factor_code_expires_at=None),
                execution_options=_NO_SYNC,
            )
            logger.warning(f"2FA challenge invalidated after {attempts} failed attempts: {user_id}")

        await db.commit()
        return attempts

    @staticmethod
    async def set_two_factor_enabled(db: AsyncSession, user_id: str, enabled: bool) -> None:
        """Enable or disable 2FA. Disabling also clears destination and challenge."""
        values: dict = {"is_two_factor_enabled": enabled}
        if not enabled:
            values.update(
                two_factor_phone=None,
                two_factor_method=None,
                two_factor_code_hash=None,
                two_factor_code_expires_at=None,
                two_factor_failed_attempts=0,
            )
        await db.execute(
            update(User).where(User.id == user_id).values(**values),
            execution_options=_NO_SYNC,
        )
        await db.commit()
