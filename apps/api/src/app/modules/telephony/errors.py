"""
Telephony Errors

Error taxonomy for call placement, SMS delivery and recording ingestion.

- Configuration errors (missing credentials, sender number or public URL)
  are fatal and never retried.
- Provider rejections (bad number, unverified sender, opted-out recipient,
  permission denied) carry a stable user-facing category and are never
  retried automatically.
- Transient provider/network failures are reported as retryable; nothing in
  this subsystem retries on its own, so a call is never placed twice.
- Ingestion failures after an authorized webhook are absorbed into session
  state by the caller, never raised back at the provider.
"""

from enum import Enum

from twilio.base.exceptions import TwilioRestException


class TelephonyError(Exception):
    """Base exception for telephony errors."""

    retryable = False

    def __init__(self, message: str, error_code: str, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class TelephonyConfigurationError(TelephonyError):
    """Raised when Twilio credentials, sender number or public URL are missing."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="TELEPHONY_NOT_CONFIGURED",
            status_code=500,
        )


class ProviderErrorCategory(str, Enum):
    """Stable, user-facing classes of provider rejection."""

    INVALID_NUMBER = "invalid_number"
    UNVERIFIED_SENDER = "unverified_sender"
    RECIPIENT_OPTED_OUT = "recipient_opted_out"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


_CATEGORY_BY_CODE: dict[int, ProviderErrorCategory] = {
    # Invalid or unreachable destination
    21211: ProviderErrorCategory.INVALID_NUMBER,
    21214: ProviderErrorCategory.INVALID_NUMBER,
    21217: ProviderErrorCategory.INVALID_NUMBER,
    13223: ProviderErrorCategory.INVALID_NUMBER,
    13224: ProviderErrorCategory.INVALID_NUMBER,
    # Sender not verified or not capable (30032: toll-free verification pending)
    21210: ProviderErrorCategory.UNVERIFIED_SENDER,
    21212: ProviderErrorCategory.UNVERIFIED_SENDER,
    21606: ProviderErrorCategory.UNVERIFIED_SENDER,
    30032: ProviderErrorCategory.UNVERIFIED_SENDER,
    # Recipient replied STOP
    21610: ProviderErrorCategory.RECIPIENT_OPTED_OUT,
    # Geo permissions, trial restrictions, authentication
    21408: ProviderErrorCategory.PERMISSION_DENIED,
    21215: ProviderErrorCategory.PERMISSION_DENIED,
    20003: ProviderErrorCategory.PERMISSION_DENIED,
}

CATEGORY_MESSAGES: dict[ProviderErrorCategory, str] = {
    ProviderErrorCategory.INVALID_NUMBER: "The phone number is invalid or cannot be reached.",
    ProviderErrorCategory.UNVERIFIED_SENDER: (
        "The sending phone number is not verified for this kind of message. "
        "Please contact your administrator."
    ),
    ProviderErrorCategory.RECIPIENT_OPTED_OUT: (
        "The recipient has opted out of messages from this number."
    ),
    ProviderErrorCategory.PERMISSION_DENIED: (
        "Calling or messaging this destination is not permitted for this account."
    ),
    ProviderErrorCategory.UNKNOWN: "The telephony provider rejected the request.",
}


def categorize_provider_code(code: int | None) -> ProviderErrorCategory:
    """Map a Twilio error code to its user-facing category."""
    if code is None:
        return ProviderErrorCategory.UNKNOWN
    return _CATEGORY_BY_CODE.get(code, ProviderErrorCategory.UNKNOWN)


class ProviderRejectedError(TelephonyError):
    """Raised when Twilio refuses a call or message. Never retried."""

    def __init__(self, provider_code: int | None, provider_message: str):
        self.provider_code = provider_code
        self.provider_message = provider_message
        self.category = categorize_provider_code(provider_code)
        super().__init__(
            message=CATEGORY_MESSAGES[self.category],
            error_code=self.category.value.upper(),
            status_code=422,
        )


class ProviderUnavailableError(TelephonyError):
    """Raised on network failures or provider-side 5xx. Safe for the caller to retry."""

    retryable = True

    def __init__(self, message: str = "The telephony provider is temporarily unavailable."):
        super().__init__(
            message=message,
            error_code="PROVIDER_UNAVAILABLE",
            status_code=503,
        )


class RecordingFetchError(TelephonyError):
    """Raised when a finished recording can't be downloaded from the provider."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="RECORDING_FETCH_FAILED",
            status_code=502,
        )


class StorageUploadError(TelephonyError):
    """Raised when a recording can't be written to object storage."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="STORAGE_UPLOAD_FAILED",
            status_code=502,
        )


class InvalidDestinationError(TelephonyError):
    """Raised when a destination phone number is empty or malformed."""

    def __init__(self, message: str = "A valid destination phone number is required."):
        super().__init__(
            message=message,
            error_code="INVALID_DESTINATION",
            status_code=400,
        )


class SessionNotFoundError(TelephonyError):
    """Raised when a call-to-record session doesn't exist or isn't visible to the user."""

    def __init__(self, session_id: str | None = None):
        message = (
            f"Call-to-record session {session_id} not found"
            if session_id
            else "Call-to-record session not found"
        )
        super().__init__(
            message=message,
            error_code="SESSION_NOT_FOUND",
            status_code=404,
        )


class RecordingNotFoundError(TelephonyError):
    """Raised when an audio file isn't in the recording library or can't be served."""

    def __init__(self, storage_path: str | None = None):
        message = "Audio recording not found"
        if storage_path:
            message = f"Audio recording {storage_path} not found"
        super().__init__(
            message=message,
            error_code="RECORDING_NOT_FOUND",
            status_code=404,
        )


class CallToRecordFailedError(TelephonyError):
    """Raised when the call for a new call-to-record session couldn't be placed."""

    def __init__(self, session_id: str, message: str, error_code: str, retryable: bool = False):
        self.session_id = session_id
        self.retryable = retryable
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503 if retryable else 502,
        )


class InvalidAudioUploadError(TelephonyError):
    """Raised when an uploaded audio file is empty, too large or not a playable type."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_AUDIO_FILE",
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
        )


class RobocallNotFoundError(TelephonyError):
    """Raised when a robocall history entry doesn't exist."""

    def __init__(self, message_id: str):
        super().__init__(
            message=f"Robocall {message_id} not found",
            error_code="ROBOCALL_NOT_FOUND",
            status_code=404,
        )


class ScheduledRobocallNotFoundError(TelephonyError):
    """Raised when a scheduled robocall doesn't exist or isn't visible to the user."""

    def __init__(self, schedule_id: str):
        super().__init__(
            message=f"Scheduled robocall {schedule_id} not found",
            error_code="SCHEDULED_ROBOCALL_NOT_FOUND",
            status_code=404,
        )


class ScheduledRobocallNotPendingError(TelephonyError):
    """Raised when cancelling a scheduled robocall that has already been picked up."""

    def __init__(self, schedule_id: str, status: str):
        super().__init__(
            message=f"Scheduled robocall {schedule_id} is already {status}",
            error_code="SCHEDULED_ROBOCALL_NOT_PENDING",
            status_code=409,
        )


class InvalidScheduleTimeError(TelephonyError):
    """Raised when a robocall is scheduled without a timezone or not in the future."""

    def __init__(self, message: str = "scheduled_for must be a future time with a timezone."):
        super().__init__(
            message=message,
            error_code="INVALID_SCHEDULE_TIME",
            status_code=400,
        )


def translate_provider_error(exc: Exception) -> TelephonyError:
    """
    Convert an exception raised by the Twilio SDK into a TelephonyError.

    Provider-side 5xx and network errors become ProviderUnavailableError;
    every other REST error becomes a categorized ProviderRejectedError.
    """
    if isinstance(exc, TwilioRestException):
        if exc.status is not None and exc.status >= 500:
            return ProviderUnavailableError()
        return ProviderRejectedError(exc.code, exc.msg)

    # requests' connection and timeout errors are OSError subclasses
    if isinstance(exc, OSError):
        return ProviderUnavailableError()

    return ProviderRejectedError(None, str(exc))


__all__ = [
    "CATEGORY_MESSAGES",
    "CallToRecordFailedError",
    "InvalidAudioUploadError",
    "InvalidDestinationError",
    "InvalidScheduleTimeError",
    "ProviderErrorCategory",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "RecordingFetchError",
    "RecordingNotFoundError",
    "RobocallNotFoundError",
    "ScheduledRobocallNotFoundError",
    "ScheduledRobocallNotPendingError",
    "SessionNotFoundError",
    "StorageUploadError",
    "TelephonyConfigurationError",
    "TelephonyError",
    "categorize_provider_code",
    "translate_provider_error",
]
