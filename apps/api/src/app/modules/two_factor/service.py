"""
Two-Factor Authentication Service

One-time codes delivered by SMS or by a voice call.

This module implements:
1. Code delivery:
   - Six-digit code, stored hashed on the user row, valid for 10 minutes
   - SMS goes straight to the provider's messaging API
   - Voice calls go through the call dispatcher (token-guarded like every call)
   - At most 3 codes per 10 minutes per user (Redis, fail-closed in production)

2. Verification:
   - A code verifies at most once; success clears the challenge
   - 5 wrong codes invalidate the challenge

3. Setup and disable flows
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.rate_limit import check_rate_limit
from app.core.security import hash_secret
from app.modules.telephony.codes import generate_code
from app.modules.telephony.dispatcher import CallDispatcher, InstructionVariant
from app.modules.telephony.errors import TelephonyConfigurationError, TelephonyError
from app.modules.telephony.phone import mask_phone_number, normalize_phone_number
from app.modules.telephony.provider import TelephonyProvider
from app.modules.telephony.tokens import Clock, utc_now
from app.modules.users.models import TwoFactorMethod, User
from app.modules.users.repository import UserRepository

logger = logging.getLogger(__name__)

SMS_TEMPLATE = "Your verification code is: {code}. This code will expire in 10 minutes."


# ============== Exceptions ==============


class TwoFactorError(Exception):
    """Base exception for two-factor errors."""

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class TwoFactorNotConfiguredError(TwoFactorError):
    """Raised when the user has no delivery destination, or 2FA isn't enabled."""

    def __init__(self, message: str = "Two-factor authentication is not set up."):
        super().__init__(
            message=message,
            error_code="TWO_FACTOR_NOT_CONFIGURED",
            status_code=400,
        )


class TwoFactorAlreadyEnabledError(TwoFactorError):
    """Raised when setup is started for a user whose 2FA is already on."""

    def __init__(self):
        super().__init__(
            message="Two-factor authentication is already enabled. Disable it before changing the phone number.",
            error_code="TWO_FACTOR_ALREADY_ENABLED",
            status_code=409,
        )


class InvalidCodeError(TwoFactorError):
    """Raised when a submitted code is wrong, expired or already used."""

    def __init__(self):
        super().__init__(
            message="The verification code is invalid or has expired.",
            error_code="INVALID_CODE",
            status_code=400,
        )


class RateLimitExceededError(TwoFactorError):
    """Raised when too many codes were requested."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message="Too many verification codes requested. Please try again later.",
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
        )


class TwoFactorDeliveryError(TwoFactorError):
    """Raised when the provider couldn't deliver the code."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(
            message=message,
            error_code="DELIVERY_FAILED",
            status_code=503 if retryable else 502,
        )


# ============== Results ==============


@dataclass
class SendResult:
    method: TwoFactorMethod
    masked_destination: str
    expires_in_seconds: int


# ============== Helpers ==============


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await UserRepository.get_by_id(db, user_id)
    if user is None or not user.is_active:
        raise TwoFactorNotConfiguredError("User not found or inactive.")
    return user


async def _deliver(
    db: AsyncSession,
    provider: TelephonyProvider,
    dispatcher: CallDispatcher,
    method: TwoFactorMethod,
    destination: str,
    code: str,
) -> None:
    if method == TwoFactorMethod.SMS:
        try:
            await provider.send_sms(destination, SMS_TEMPLATE.format(code=code))
        except TelephonyConfigurationError:
            raise
        except TelephonyError as e:
            raise TwoFactorDeliveryError(e.message, retryable=e.retryable) from e
        return

    result = await dispatcher.dispatch(
        db, destination, InstructionVariant.SPEAK_CODE, {"code": code}
    )
    if not result.success:
        raise TwoFactorDeliveryError(
            result.error_message or "The verification call could not be placed.",
            retryable=result.retryable,
        )


# ============== Operations ==============


async def send_code(
    db: AsyncSession,
    provider: TelephonyProvider,
    dispatcher: CallDispatcher,
    user_id: str,
    method: TwoFactorMethod | None = None,
    *,
    require_enabled: bool = True,
    clock: Clock = utc_now,
) -> SendResult:
    """
    Issue a new code and deliver it to the user's 2FA phone.

    The new code replaces any outstanding one only once it has been
    delivered, so a failed SMS or call leaves the previous code usable.

    Args:
        method: Delivery method; defaults to the user's saved preference
        require_enabled: False during setup, before 2FA is switched on

    Raises:
        TwoFactorNotConfiguredError: No destination, or 2FA not enabled
        RateLimitExceededError: More than 3 codes in 10 minutes
        TwoFactorDeliveryError: The provider rejected the SMS or call
        TelephonyConfigurationError: Twilio or SERVER_URL are not configured
    """
    user = await _get_user(db, user_id)

    if require_enabled and not user.is_two_factor_enabled:
        raise TwoFactorNotConfiguredError()
    if not user.two_factor_phone:
        raise TwoFactorNotConfiguredError("No phone number is set up for verification codes.")

    method = method or user.two_factor_method or TwoFactorMethod.SMS

    window = settings.two_factor_send_window_seconds
    allowed = await check_rate_limit(
        f"2fa_send:{user.id}",
        limit=settings.two_factor_send_limit,
        window_seconds=window,
        fail_closed=settings.is_production,
    )
    if not allowed:
        logger.warning(f"2FA send rate limit exceeded for user {user.id}")
        raise RateLimitExceededError(retry_after_seconds=window)

    code = generate_code()
    ttl = timedelta(minutes=settings.two_factor_code_ttl_minutes)
    expires_at = clock() + ttl

    await _deliver(db, provider, dispatcher, method, user.two_factor_phone, code)

    await UserRepository.store_two_factor_challenge(db, user.id, hash_secret(code), expires_at)

    masked = mask_phone_number(user.two_factor_phone)
    logger.info(f"2FA code sent to user {user.id} via {method.value} ({masked})")

    return SendResult(
        method=method,
        masked_destination=masked,
        expires_in_seconds=int(ttl.total_seconds()),
    )


async def verify_code(
    db: AsyncSession,
    user_id: str,
    code: str,
    clock: Clock = utc_now,
) -> bool:
    """
    Check a submitted code against the outstanding challenge.

    True only for the first correct submission inside the validity window;
    the challenge is cleared on success. Wrong codes count toward the
    attempt limit.
    """
    user = await UserRepository.get_by_id(db, user_id)
    if user is None or not user.two_factor_code_hash:
        logger.warning(f"2FA verification with no outstanding challenge: {user_id}")
        return False

    if await UserRepository.consume_two_factor_challenge(
        db, user.id, hash_secret(code.strip()), clock()
    ):
        logger.info(f"2FA code verified for user {user.id}")
        return True

    attempts = await UserRepository.record_failed_attempt(
        db, user.id, settings.two_factor_max_failed_attempts
    )
    logger.warning(f"2FA verification failed for user {user.id} (attempt {attempts})")
    return False


async def start_setup(
    db: AsyncSession,
    provider: TelephonyProvider,
    dispatcher: CallDispatcher,
    user_id: str,
    phone_number: str,
    method: TwoFactorMethod,
) -> SendResult:
    """
    Save the delivery destination and send a first code to confirm it.

    2FA stays disabled until the code is verified with ``complete_setup``.
    Changing the phone of an enrolled user requires disabling 2FA first,
    which proves possession of the enrolled phone.

    Raises:
        TwoFactorAlreadyEnabledError: If 2FA is already enabled
    """
    user = await _get_user(db, user_id)
    if user.is_two_factor_enabled:
        raise TwoFactorAlreadyEnabledError()

    destination = normalize_phone_number(phone_number)
    if destination is None:
        raise TwoFactorError(
            message="A valid phone number is required.",
            error_code="INVALID_PHONE_NUMBER",
        )

    await UserRepository.set_two_factor_destination(db, user_id, destination, method)
    return await send_code(db, provider, dispatcher, user_id, method, require_enabled=False)


async def complete_setup(db: AsyncSession, user_id: str, code: str) -> None:
    """
    Enable 2FA once the setup code is verified.

    Raises:
        InvalidCodeError: If the code is wrong, expired or already used
    """
    if not await verify_code(db, user_id, code):
        raise InvalidCodeError()

    await UserRepository.set_two_factor_enabled(db, user_id, True)
    logger.info(f"2FA enabled for user {user_id}")


async def disable(db: AsyncSession, user_id: str, code: str) -> None:
    """
    Turn 2FA off. Requires a current code.

    Raises:
        TwoFactorNotConfiguredError: If 2FA isn't enabled
        InvalidCodeError: If the code is wrong, expired or already used
    """
    user = await _get_user(db, user_id)
    if not user.is_two_factor_enabled:
        raise TwoFactorNotConfiguredError()

    if not await verify_code(db, user_id, code):
        raise InvalidCodeError()

    await UserRepository.set_two_factor_enabled(db, user_id, False)
    logger.info(f"2FA disabled for user {user_id}")


async def get_status(db: AsyncSession, user_id: str) -> User:
    return await _get_user(db, user_id)
