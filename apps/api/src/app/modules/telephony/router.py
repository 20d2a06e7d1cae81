"""
Robocalls Router

Authenticated endpoints for sending robocalls, recording messages by phone
and browsing the recording library.

Endpoints:
- POST /robocalls - Call a list of numbers with a message or audio file
- POST /robocalls/call-to-record - Call the user to record a message
- GET /robocalls/call-to-record/{session_id} - Poll a call-to-record session
- GET /robocalls/recordings - List the user's saved recordings
- POST /robocalls/recordings - Upload an MP3 or WAV file to the library
- GET /robocalls/history - List past robocall sends
- GET /robocalls/history/{message_id} - One send with per-recipient outcomes
- POST /robocalls/scheduled - Schedule a robocall for later
- GET /robocalls/scheduled - List the user's scheduled robocalls
- DELETE /robocalls/scheduled/{schedule_id} - Cancel a pending schedule

Security:
- Requires a bearer token and a communications role
- Robocall dispatch is rate limited per user
- Sessions, recordings and schedules are only visible to the user who
  created them; delivery history is shared by all communications staff
"""

import logging
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import CurrentUser, get_communications_user
from app.core.config import settings
from app.core.database import get_db
from app.core.rate_limit import rate_limit, user_rate_limit_key
from app.core.storage import ObjectStorage
from app.modules.telephony import service
from app.modules.telephony.dependencies import get_call_dispatcher, get_object_storage
from app.modules.telephony.dispatcher import CallDispatcher
from app.modules.telephony.errors import (
    CallToRecordFailedError,
    TelephonyConfigurationError,
    TelephonyError,
)
from app.modules.telephony.schemas import (
    CallToRecordRequest,
    CallToRecordSessionResponse,
    RobocallHistoryResponse,
    RobocallMessageDetailResponse,
    RobocallRequest,
    RobocallResponse,
    SavedRecordingListResponse,
    SavedRecordingResponse,
    ScheduledRobocallListResponse,
    ScheduledRobocallRequest,
    ScheduledRobocallResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(e: TelephonyError, status_code: int | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code or e.status_code,
        detail={
            "error": e.error_code,
            "message": e.message,
        },
    )


@router.post(
    "",
    response_model=RobocallResponse,
    summary="Send Robocall",
    description="""
Call each number and play a text-to-speech message or a recording from the
library.

Numbers are normalized to E.164 (ten digits are treated as North American),
invalid numbers are skipped and reported, and duplicates are removed.
Calls are placed one at a time; a failed recipient never stops the rest.

**Status codes:**
- 200: every call was placed
- 207: some calls failed (see per-recipient results)
- 502: every call failed
""",
)
@rate_limit(limit=10, window_seconds=600, key_func=user_rate_limit_key)
async def send_robocall(
    request: Request,
    response: Response,
    data: RobocallRequest,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: CallDispatcher = Depends(get_call_dispatcher),
    storage: ObjectStorage = Depends(get_object_storage),
) -> RobocallResponse:
    try:
        result = await service.send_robocall(db, dispatcher, storage, user, data)
    except TelephonyConfigurationError as e:
        logger.error(f"Robocall failed, telephony misconfigured: {e.message}")
        raise _error(e) from e
    except TelephonyError as e:
        logger.warning(f"Robocall rejected: {e.message}")
        raise _error(e) from e

    if result.succeeded == 0:
        response.status_code = status.HTTP_502_BAD_GATEWAY
    elif result.failed > 0:
        response.status_code = status.HTTP_207_MULTI_STATUS

    return result


@router.post(
    "/call-to-record",
    response_model=CallToRecordSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a Message by Phone",
    description="""
Call the given number and prompt the user to record a message after the
tone. Poll the returned session until it is `completed` or `failed`.
Sessions expire after one hour.
""",
)
@rate_limit(limit=5, window_seconds=600, key_func=user_rate_limit_key)
async def start_call_to_record(
    request: Request,
    data: CallToRecordRequest,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: CallDispatcher = Depends(get_call_dispatcher),
) -> CallToRecordSessionResponse:
    try:
        session = await service.start_call_to_record(db, dispatcher, user, data.phone_number)
    except CallToRecordFailedError as e:
        logger.warning(f"Call-to-record session {e.session_id} failed: {e.error_code}")
        raise HTTPException(
            status_code=e.status_code,
            detail={
                "error": e.error_code,
                "message": e.message,
                "session_id": e.session_id,
                "retryable": e.retryable,
            },
        ) from e
    except TelephonyError as e:
        logger.warning(f"Call-to-record rejected: {e.message}")
        raise _error(e) from e

    return CallToRecordSessionResponse.model_validate(session)


@router.get(
    "/call-to-record/{session_id}",
    response_model=CallToRecordSessionResponse,
    summary="Get Call-to-Record Session",
)
async def get_call_to_record_session(
    session_id: UUID,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
) -> CallToRecordSessionResponse:
    """Session status, with a signed URL for the recording once completed."""
    try:
        return await service.get_call_to_record_session(db, storage, user, str(session_id))
    except TelephonyError as e:
        raise _error(e) from e


@router.get(
    "/recordings",
    response_model=SavedRecordingListResponse,
    summary="List Saved Recordings",
)
async def list_recordings(
    limit: int = Query(50, ge=1, le=service.MAX_RECORDINGS_PAGE),
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
) -> SavedRecordingListResponse:
    """The user's recordings, newest first."""
    return await service.list_recordings(db, storage, user, limit)


@router.post(
    "/recordings",
    response_model=SavedRecordingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload Recording",
    description="""
Upload an MP3 or WAV file to the recording library so it can be played in
robocalls. The returned `storage_path` is what `audio_storage_path` expects.
""",
)
@rate_limit(limit=20, window_seconds=600, key_func=user_rate_limit_key)
async def upload_recording(
    request: Request,
    name: str = Form(..., min_length=1, max_length=255),
    description: str | None = Form(None, max_length=2000),
    file: UploadFile = File(...),
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
) -> SavedRecordingResponse:
    # One byte past the limit is enough to reject an oversized file
    data = await file.read(settings.max_audio_upload_bytes + 1)
    try:
        return await service.upload_recording(
            db,
            storage,
            user,
            name=name,
            description=description,
            data=data,
            content_type=file.content_type,
        )
    except TelephonyError as e:
        logger.warning(f"Audio upload rejected: {e.message}")
        raise _error(e) from e


@router.get(
    "/history",
    response_model=RobocallHistoryResponse,
    summary="List Robocall History",
)
async def list_robocall_history(
    limit: int = Query(50, ge=1, le=service.MAX_HISTORY_PAGE),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
) -> RobocallHistoryResponse:
    """Past robocall sends with their totals, newest first."""
    return await service.list_robocall_history(db, limit, offset)


@router.get(
    "/history/{message_id}",
    response_model=RobocallMessageDetailResponse,
    summary="Get Robocall Details",
)
async def get_robocall_details(
    message_id: UUID,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
) -> RobocallMessageDetailResponse:
    """A past send with each recipient's call SID, status and error."""
    try:
        return await service.get_robocall_details(db, str(message_id))
    except TelephonyError as e:
        raise _error(e) from e


@router.post(
    "/scheduled",
    response_model=ScheduledRobocallResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule Robocall",
    description="""
Save a robocall to be sent at `scheduled_for` (ISO 8601 with a timezone).
Numbers are validated and normalized now; the calls are placed by a
background job within a minute of the scheduled time.
""",
)
@rate_limit(limit=10, window_seconds=600, key_func=user_rate_limit_key)
async def schedule_robocall(
    request: Request,
    data: ScheduledRobocallRequest,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
) -> ScheduledRobocallResponse:
    try:
        return await service.schedule_robocall(db, user, data)
    except TelephonyError as e:
        logger.warning(f"Robocall schedule rejected: {e.message}")
        raise _error(e) from e


@router.get(
    "/scheduled",
    response_model=ScheduledRobocallListResponse,
    summary="List Scheduled Robocalls",
)
async def list_scheduled_robocalls(
    limit: int = Query(50, ge=1, le=service.MAX_HISTORY_PAGE),
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
) -> ScheduledRobocallListResponse:
    """The user's scheduled robocalls, soonest first."""
    return await service.list_scheduled_robocalls(db, user, limit)


@router.delete(
    "/scheduled/{schedule_id}",
    response_model=ScheduledRobocallResponse,
    summary="Cancel Scheduled Robocall",
)
async def cancel_scheduled_robocall(
    schedule_id: UUID,
    user: CurrentUser = Depends(get_communications_user),
    db: AsyncSession = Depends(get_db),
) -> ScheduledRobocallResponse:
    """Cancel a schedule that hasn't been picked up yet (409 otherwise)."""
    try:
        return await service.cancel_scheduled_robocall(db, user, str(schedule_id))
    except TelephonyError as e:
        raise _error(e) from e
