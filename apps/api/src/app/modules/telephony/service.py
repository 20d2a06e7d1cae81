"""
Telephony Service Layer

Business logic behind the authenticated robocall endpoints.

This module implements:
1. Robocalls:
   - Normalize numbers to E.164, drop invalid ones, de-duplicate
   - Text-to-speech or a library audio file (served via a signed URL)
   - Sequential dispatch with per-recipient results

2. Call-to-record:
   - Create a session (1 hour lifetime) and call the user's phone
   - A rejected call marks the session failed immediately
   - Owner-only status polling, with a signed URL once completed

3. Recording library:
   - Listing with signed URLs
   - MP3/WAV uploads (size-capped) stored under a timestamped name

4. Delivery history:
   - Every send is recorded with totals and one log row per recipient
   - A failure to record history never fails a send that already placed calls

5. Scheduled robocalls:
   - Recipients and audio are validated when the schedule is created
   - A scheduler tick claims each due schedule before dispatching it, so a
     schedule is sent at most once
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import CurrentUser
from app.core.config import settings
from app.core.storage import ObjectStorage, StorageError
from app.modules.telephony import repository
from app.modules.telephony.dispatcher import CallDispatcher, DispatchResult, InstructionVariant
from app.modules.telephony.errors import (
    CallToRecordFailedError,
    InvalidAudioUploadError,
    InvalidDestinationError,
    InvalidScheduleTimeError,
    RecordingNotFoundError,
    RobocallNotFoundError,
    ScheduledRobocallNotFoundError,
    ScheduledRobocallNotPendingError,
    SessionNotFoundError,
    StorageUploadError,
    TelephonyConfigurationError,
    TelephonyError,
)
from app.modules.telephony.models import (
    CallToRecordSession,
    CallToRecordStatus,
    RecordingMethod,
    RobocallDeliveryStatus,
    RobocallMethod,
    ScheduledRobocall,
    ScheduledRobocallStatus,
)
from app.modules.telephony.phone import mask_phone_number, normalize_phone_number
from app.modules.telephony.schemas import (
    CallToRecordSessionResponse,
    RecipientLogResponse,
    RecipientResult,
    RobocallHistoryResponse,
    RobocallMessageDetailResponse,
    RobocallMessageResponse,
    RobocallRequest,
    RobocallResponse,
    SavedRecordingListResponse,
    SavedRecordingResponse,
    ScheduledRobocallListResponse,
    ScheduledRobocallRequest,
    ScheduledRobocallResponse,
)
from app.modules.telephony.tokens import Clock, utc_now

logger = logging.getLogger(__name__)

MAX_RECORDINGS_PAGE = 100
MAX_HISTORY_PAGE = 100

# Formats Twilio <Play> accepts, by content type
AUDIO_EXTENSIONS = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/wave": ".wav",
    "audio/x-wav": ".wav",
}


def prepare_recipients(phone_numbers: list[str]) -> tuple[list[str], list[str]]:
    """
    Normalize and de-duplicate recipients, keeping first-seen order.

    Returns:
        (valid E.164 numbers, inputs that couldn't be normalized)
    """
    valid: list[str] = []
    invalid: list[str] = []
    for raw in phone_numbers:
        normalized = normalize_phone_number(raw)
        if normalized is None:
            invalid.append(raw)
        else:
            valid.append(normalized)
    return list(dict.fromkeys(valid)), invalid


async def _signed_url_or_none(storage: ObjectStorage, path: str | None) -> str | None:
    if not path:
        return None
    try:
        return await storage.signed_url(path)
    except StorageError as e:
        logger.warning(f"Could not sign URL for {path}: {e}")
        return None


async def _robocall_instruction(
    db: AsyncSession,
    storage: ObjectStorage,
    recording_method: RobocallMethod,
    text_content: str | None,
    audio_storage_path: str | None,
    from_name: str,
) -> tuple[InstructionVariant, dict[str, str]]:
    """The TwiML variant and query parameters for a robocall's content."""
    if recording_method == RobocallMethod.TEXT_TO_SPEECH:
        return InstructionVariant.SPEAK_MESSAGE, {"message": text_content, "fromName": from_name}

    recording = await repository.get_saved_recording_by_path(db, audio_storage_path)
    if recording is None:
        raise RecordingNotFoundError(audio_storage_path)
    try:
        audio_url = await storage.signed_url(recording.storage_path)
    except StorageError as e:
        logger.error(f"Could not sign audio URL for {recording.storage_path}: {e}")
        raise RecordingNotFoundError(recording.storage_path) from e
    return InstructionVariant.PLAY_AUDIO, {"audioUrl": audio_url, "fromName": from_name}


def _delivery_status(succeeded: int, total: int) -> RobocallDeliveryStatus:
    if succeeded == total:
        return RobocallDeliveryStatus.COMPLETED
    if succeeded == 0:
        return RobocallDeliveryStatus.FAILED
    return RobocallDeliveryStatus.PARTIAL


def _recipient_log(result: DispatchResult) -> dict[str, Any]:
    return {
        "phone_number": result.phone_number,
        "call_sid": result.call_sid,
        "status": (result.status or "queued") if result.success else "failed",
        "error_code": result.error_code,
        "error_message": result.error_message,
    }


async def _record_history(
    db: AsyncSession,
    *,
    recording_method: RobocallMethod,
    text_content: str | None,
    audio_storage_path: str | None,
    from_name: str,
    recipients: list[str],
    results: list[DispatchResult],
    sent_by: str | None,
    sent_at: datetime,
) -> str | None:
    """
    Write the delivery history for a send.

    The calls have already been placed, so a failed write is logged and
    reported as None rather than raised.
    """
    succeeded = sum(1 for r in results if r.success)
    try:
        message = await repository.create_robocall_message(
            db,
            recording_method=recording_method,
            text_content=text_content,
            audio_storage_path=audio_storage_path,
            from_name=from_name,
            phone_numbers=recipients,
            status=_delivery_status(succeeded, len(results)),
            success_count=succeeded,
            fail_count=len(results) - succeeded,
            sent_by=sent_by,
            sent_at=sent_at,
            recipient_logs=[_recipient_log(r) for r in results],
        )
    except Exception as e:
        logger.error(f"Failed to record robocall history: {e}", exc_info=True)
        await db.rollback()
        return None
    return message.id


async def _deliver_robocall(
    db: AsyncSession,
    dispatcher: CallDispatcher,
    storage: ObjectStorage,
    *,
    sent_by: str | None,
    recording_method: RobocallMethod,
    text_content: str | None,
    audio_storage_path: str | None,
    from_name: str | None,
    recipients: list[str],
    invalid: list[str],
    clock: Clock = utc_now,
) -> RobocallResponse:
    """Dispatch a robocall to normalized recipients and record its history."""
    from_name = from_name or settings.sender_display_name
    if recording_method == RobocallMethod.TEXT_TO_SPEECH:
        text_content = text_content.strip()
        audio_storage_path = None
    else:
        text_content = None

    variant, params = await _robocall_instruction(
        db, storage, recording_method, text_content, audio_storage_path, from_name
    )

    logger.info(
        f"User {sent_by} sending {recording_method.value} robocall to "
        f"{len(recipients)} recipients ({len(invalid)} invalid numbers skipped)"
    )

    results = await dispatcher.dispatch_bulk(db, recipients, variant, params)
    succeeded = sum(1 for r in results if r.success)

    message_id = await _record_history(
        db,
        recording_method=recording_method,
        text_content=text_content,
        audio_storage_path=audio_storage_path,
        from_name=from_name,
        recipients=recipients,
        results=results,
        sent_by=sent_by,
        sent_at=clock(),
    )

    return RobocallResponse(
        robocall_message_id=message_id,
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        invalid_numbers=invalid,
        results=[
            RecipientResult(
                phone_number=r.phone_number,
                success=r.success,
                call_sid=r.call_sid,
                status=r.status,
                error_code=r.error_code,
                error_category=r.error_category,
                error_message=r.error_message,
                retryable=r.retryable,
            )
            for r in results
        ],
    )


async def send_robocall(
    db: AsyncSession,
    dispatcher: CallDispatcher,
    storage: ObjectStorage,
    user: CurrentUser,
    data: RobocallRequest,
    clock: Clock = utc_now,
) -> RobocallResponse:
    """
    Call every recipient with a spoken message or a library audio file.

    The send is recorded in the delivery history with one log row per
    recipient.

    Raises:
        InvalidDestinationError: If no number survives normalization
        RecordingNotFoundError: If the audio file isn't in the library
        TelephonyConfigurationError: If Twilio or SERVER_URL are not configured
    """
    recipients, invalid = prepare_recipients(data.phone_numbers)
    if not recipients:
        raise InvalidDestinationError("No valid phone numbers were provided.")

    return await _deliver_robocall(
        db,
        dispatcher,
        storage,
        sent_by=user.id,
        recording_method=data.recording_method,
        text_content=data.text_content,
        audio_storage_path=data.audio_storage_path,
        from_name=data.from_name,
        recipients=recipients,
        invalid=invalid,
        clock=clock,
    )


async def start_call_to_record(
    db: AsyncSession,
    dispatcher: CallDispatcher,
    user: CurrentUser,
    phone_number: str,
    clock: Clock = utc_now,
) -> CallToRecordSession:
    """
    Create a session and call ``phone_number`` to record a message.

    Raises:
        InvalidDestinationError: If the number can't be normalized
        CallToRecordFailedError: If the call was rejected (session is failed)
        TelephonyConfigurationError: If Twilio or SERVER_URL are not configured
    """
    destination = normalize_phone_number(phone_number)
    if destination is None:
        raise InvalidDestinationError()

    session = await repository.create_session(
        db,
        user_id=user.id,
        phone_number=destination,
        expires_at=clock() + timedelta(minutes=settings.call_to_record_session_ttl_minutes),
    )

    try:
        result = await dispatcher.dispatch(
            db,
            destination,
            InstructionVariant.PROMPT_AND_RECORD,
            session_id=session.id,
        )
    except TelephonyConfigurationError as e:
        await repository.fail_session(db, session.id, e.message)
        raise

    if not result.success:
        await repository.fail_session(db, session.id, result.error_message or "Call failed")
        raise CallToRecordFailedError(
            session_id=session.id,
            message=result.error_message or "The call could not be placed.",
            error_code=result.error_code or "CALL_FAILED",
            retryable=result.retryable,
        )

    await repository.mark_calling(db, session.id, result.call_sid)
    logger.info(
        f"Call-to-record session {session.id} calling {mask_phone_number(destination)}"
    )

    return await repository.get_session(db, session.id)


async def get_call_to_record_session(
    db: AsyncSession,
    storage: ObjectStorage,
    user: CurrentUser,
    session_id: str,
) -> CallToRecordSessionResponse:
    """
    Get a session the user initiated.

    Raises:
        SessionNotFoundError: If it doesn't exist or belongs to someone else
    """
    session = await repository.get_session_for_user(db, session_id, user.id)
    if session is None:
        raise SessionNotFoundError(session_id)

    response = CallToRecordSessionResponse.model_validate(session)
    if session.status == CallToRecordStatus.COMPLETED:
        response.signed_url = await _signed_url_or_none(storage, session.recording_storage_path)
    return response


async def list_recordings(
    db: AsyncSession,
    storage: ObjectStorage,
    user: CurrentUser,
    limit: int = 50,
) -> SavedRecordingListResponse:
    """The user's library recordings, newest first, each with a signed URL."""
    limit = max(1, min(limit, MAX_RECORDINGS_PAGE))
    recordings = await repository.list_saved_recordings(db, user.id, limit)

    items = []
    for recording in recordings:
        item = SavedRecordingResponse.model_validate(recording)
        item.url = await _signed_url_or_none(storage, recording.storage_path)
        items.append(item)

    return SavedRecordingListResponse(recordings=items)


async def upload_recording(
    db: AsyncSession,
    storage: ObjectStorage,
    user: CurrentUser,
    *,
    name: str,
    description: str | None,
    data: bytes,
    content_type: str | None,
    clock: Clock = utc_now,
) -> SavedRecordingResponse:
    """
    Store an uploaded MP3 or WAV file and add it to the library.

    The object name is the recording name plus a millisecond timestamp, so
    two uploads with the same name never overwrite each other.

    Raises:
        InvalidAudioUploadError: If the name is blank, the file is empty or
            too large, or the content type can't be played on a call
        StorageUploadError: If the file couldn't be written to storage
    """
    name = name.strip()
    if not name:
        raise InvalidAudioUploadError("A recording name is required.")

    media_type = (content_type or "").split(";")[0].strip().lower()
    extension = AUDIO_EXTENSIONS.get(media_type)
    if extension is None:
        raise InvalidAudioUploadError(
            "Only MP3 and WAV audio files can be played on calls.",
            error_code="UNSUPPORTED_AUDIO_TYPE",
            status_code=415,
        )
    if not data:
        raise InvalidAudioUploadError("The audio file is empty.", error_code="EMPTY_AUDIO_FILE")
    if len(data) > settings.max_audio_upload_bytes:
        raise InvalidAudioUploadError(
            f"Audio files are limited to {settings.max_audio_upload_bytes} bytes.",
            error_code="AUDIO_FILE_TOO_LARGE",
            status_code=413,
        )

    file_name = f"{name}_{int(clock().timestamp() * 1000)}{extension}"
    try:
        stored = await storage.upload(data, file_name, media_type)
    except StorageError as e:
        logger.error(f"Audio upload {file_name} failed: {e}")
        raise StorageUploadError(f"Failed to store audio file: {e}") from e

    recording = await repository.create_saved_recording(
        db,
        name=name,
        description=description,
        storage_path=stored.path,
        recording_method=RecordingMethod.UPLOAD,
        created_by=user.id,
        file_size_bytes=len(data),
    )
    logger.info(f"User {user.id} uploaded {len(data)} bytes of audio as {stored.path}")

    response = SavedRecordingResponse.model_validate(recording)
    response.url = stored.url
    return response


# =============================================================================
# Delivery history
# =============================================================================


async def list_robocall_history(
    db: AsyncSession, limit: int = 50, offset: int = 0
) -> RobocallHistoryResponse:
    """Past robocall sends, newest first."""
    limit = max(1, min(limit, MAX_HISTORY_PAGE))
    offset = max(0, offset)
    messages = await repository.list_robocall_messages(db, limit, offset)
    return RobocallHistoryResponse(
        messages=[RobocallMessageResponse.model_validate(m) for m in messages],
        limit=limit,
        offset=offset,
    )


async def get_robocall_details(
    db: AsyncSession, message_id: str
) -> RobocallMessageDetailResponse:
    """
    A past send with every recipient's outcome.

    Raises:
        RobocallNotFoundError: If there is no such send
    """
    message = await repository.get_robocall_message(db, message_id)
    if message is None:
        raise RobocallNotFoundError(message_id)

    logs = await repository.list_recipient_logs(db, message_id)
    response = RobocallMessageDetailResponse.model_validate(message)
    response.recipients = [RecipientLogResponse.model_validate(log) for log in logs]
    return response


# =============================================================================
# Scheduled robocalls
# =============================================================================


def _scheduled_response(
    scheduled: ScheduledRobocall, invalid: list[str] | None = None
) -> ScheduledRobocallResponse:
    response = ScheduledRobocallResponse.model_validate(scheduled)
    response.invalid_numbers = invalid or []
    return response


async def schedule_robocall(
    db: AsyncSession,
    user: CurrentUser,
    data: ScheduledRobocallRequest,
    clock: Clock = utc_now,
) -> ScheduledRobocallResponse:
    """
    Save a robocall to be sent at ``data.scheduled_for``.

    Recipients are normalized now and the audio file must already be in the
    library, so problems surface to the user instead of at send time.

    Raises:
        InvalidScheduleTimeError: If the time has no timezone or isn't in the future
        InvalidDestinationError: If no number survives normalization
        RecordingNotFoundError: If the audio file isn't in the library
    """
    if data.scheduled_for.tzinfo is None:
        raise InvalidScheduleTimeError("scheduled_for must include a timezone.")
    if data.scheduled_for <= clock():
        raise InvalidScheduleTimeError("scheduled_for must be in the future.")

    recipients, invalid = prepare_recipients(data.phone_numbers)
    if not recipients:
        raise InvalidDestinationError("No valid phone numbers were provided.")

    text_content = None
    audio_storage_path = None
    if data.recording_method == RobocallMethod.TEXT_TO_SPEECH:
        text_content = data.text_content.strip()
    else:
        if await repository.get_saved_recording_by_path(db, data.audio_storage_path) is None:
            raise RecordingNotFoundError(data.audio_storage_path)
        audio_storage_path = data.audio_storage_path

    scheduled = await repository.create_scheduled_robocall(
        db,
        recording_method=data.recording_method,
        text_content=text_content,
        audio_storage_path=audio_storage_path,
        from_name=data.from_name,
        phone_numbers=recipients,
        scheduled_for=data.scheduled_for.astimezone(UTC),
        created_by=user.id,
    )
    logger.info(
        f"User {user.id} scheduled robocall {scheduled.id} to {len(recipients)} "
        f"recipients for {scheduled.scheduled_for.isoformat()}"
    )

    return _scheduled_response(scheduled, invalid)


async def list_scheduled_robocalls(
    db: AsyncSession, user: CurrentUser, limit: int = 50
) -> ScheduledRobocallListResponse:
    """The user's scheduled robocalls, soonest first."""
    limit = max(1, min(limit, MAX_HISTORY_PAGE))
    scheduled = await repository.list_scheduled_robocalls(db, user.id, limit)
    return ScheduledRobocallListResponse(scheduled=[_scheduled_response(s) for s in scheduled])


async def cancel_scheduled_robocall(
    db: AsyncSession, user: CurrentUser, schedule_id: str
) -> ScheduledRobocallResponse:
    """
    Cancel a schedule the user created, as long as it hasn't been picked up.

    Raises:
        ScheduledRobocallNotFoundError: If it doesn't exist or belongs to someone else
        ScheduledRobocallNotPendingError: If it is already sending or finished
    """
    scheduled = await repository.get_scheduled_robocall(db, schedule_id, user.id)
    if scheduled is None:
        raise ScheduledRobocallNotFoundError(schedule_id)

    if not await repository.cancel_scheduled_robocall(db, schedule_id):
        current = await repository.get_scheduled_robocall(db, schedule_id)
        raise ScheduledRobocallNotPendingError(schedule_id, current.status.value)

    logger.info(f"User {user.id} cancelled scheduled robocall {schedule_id}")
    return _scheduled_response(await repository.get_scheduled_robocall(db, schedule_id))


async def send_scheduled_robocall(
    db: AsyncSession,
    dispatcher: CallDispatcher,
    storage: ObjectStorage,
    schedule_id: str,
    clock: Clock = utc_now,
) -> ScheduledRobocallStatus | None:
    """
    Claim a due schedule and dispatch it.

    Returns:
        SENT or FAILED, or None when the schedule was cancelled or already
        claimed by another instance
    """
    if not await repository.claim_scheduled_robocall(db, schedule_id):
        return None

    scheduled = await repository.get_scheduled_robocall(db, schedule_id)

    try:
        result = await _deliver_robocall(
            db,
            dispatcher,
            storage,
            sent_by=scheduled.created_by,
            recording_method=scheduled.recording_method,
            text_content=scheduled.text_content,
            audio_storage_path=scheduled.audio_storage_path,
            from_name=scheduled.from_name,
            recipients=list(scheduled.phone_numbers),
            invalid=[],
            clock=clock,
        )
    except TelephonyError as e:
        logger.error(f"Scheduled robocall {schedule_id} could not be sent: {e.message}")
        await repository.mark_scheduled_robocall_failed(db, schedule_id, e.message)
        return ScheduledRobocallStatus.FAILED
    except Exception as e:
        logger.error(f"Scheduled robocall {schedule_id} failed: {e}", exc_info=True)
        await db.rollback()
        await repository.mark_scheduled_robocall_failed(
            db, schedule_id, "An unexpected error occurred while sending."
        )
        return ScheduledRobocallStatus.FAILED

    if result.succeeded == 0:
        await repository.mark_scheduled_robocall_failed(
            db,
            schedule_id,
            "No call could be placed.",
            robocall_message_id=result.robocall_message_id,
        )
        return ScheduledRobocallStatus.FAILED

    await repository.mark_scheduled_robocall_sent(
        db, schedule_id, result.robocall_message_id, clock()
    )
    logger.info(
        f"Scheduled robocall {schedule_id} sent: {result.succeeded}/{result.total} calls placed"
    )
    return ScheduledRobocallStatus.SENT
