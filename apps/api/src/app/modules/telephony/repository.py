"""
Telephony Repository

Database operations for call-to-record sessions, saved audio recordings,
robocall delivery history and scheduled robocalls.

Design Principles:
- Single responsibility - only database operations, no business logic
- Every session and schedule state change is one conditional UPDATE keyed by id and
  guarded on the current status; the returned bool says whether this caller
  won the transition. No row locks or multi-row transactions are needed.
- Timezone-aware datetime handling (UTC)
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    ACTIVE_SESSION_STATUSES,
    CallToRecordSession,
    CallToRecordStatus,
    RecordingMethod,
    RobocallDeliveryStatus,
    RobocallMessage,
    RobocallMethod,
    RobocallRecipientLog,
    SavedAudioRecording,
    ScheduledRobocall,
    ScheduledRobocallStatus,
)

# Bulk updates bypass the identity map; reads use populate_existing instead.
_NO_SYNC = {"synchronize_session": False}


async def create_session(
    db: AsyncSession,
    *,
    user_id: str | None,
    phone_number: str,
    expires_at: datetime,
) -> CallToRecordSession:
    """Create a pending call-to-record session."""
    session = CallToRecordSession(
        user_id=user_id,
        phone_number=phone_number,
        status=CallToRecordStatus.PENDING,
        expires_at=expires_at,
    )

    db.add(session)
    await db.commit()
    await db.refresh(session)

    return session


async def get_session(db: AsyncSession, session_id: str) -> CallToRecordSession | None:
    """Get a session by ID, always reading the current row."""
    result = await db.execute(
        select(CallToRecordSession)
        .where(CallToRecordSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_session_for_user(
    db: AsyncSession, session_id: str, user_id: str
) -> CallToRecordSession | None:
    """Get a session only if it was initiated by ``user_id``."""
    result = await db.execute(
        select(CallToRecordSession)
        .where(
            CallToRecordSession.id == session_id,
            CallToRecordSession.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _transition(db: AsyncSession, session_id: str, *conditions, **values) -> bool:
    result = await db.execute(
        update(CallToRecordSession)
        .where(CallToRecordSession.id == session_id, *conditions)
        .values(**values),
        execution_options=_NO_SYNC,
    )
    await db.commit()
    return result.rowcount == 1


async def mark_calling(db: AsyncSession, session_id: str, call_sid: str) -> bool:
    """pending -> calling, once Twilio accepts the call."""
    return await _transition(
        db,
        session_id,
        CallToRecordSession.status == CallToRecordStatus.PENDING,
        status=CallToRecordStatus.CALLING,
        call_sid=call_sid,
    )


async def claim_recording(
    db: AsyncSession,
    session_id: str,
    *,
    recording_sid: str,
    recording_url: str | None,
    duration_seconds: int | None,
) -> bool:
    """
    Claim an active session for ingestion of one recording.

    Succeeds for exactly one webhook delivery: the session must still be
    active and must not have a recording attached yet.
    """
    return await _transition(
        db,
        session_id,
        CallToRecordSession.status.in_(ACTIVE_SESSION_STATUSES),
        CallToRecordSession.recording_sid.is_(None),
        recording_sid=recording_sid,
        recording_url=recording_url,
        recording_duration_seconds=duration_seconds,
    )


async def complete_session(db: AsyncSession, session_id: str, storage_path: str) -> bool:
    """Active -> completed with the stored recording's path."""
    return await _transition(
        db,
        session_id,
        CallToRecordSession.status.in_(ACTIVE_SESSION_STATUSES),
        status=CallToRecordStatus.COMPLETED,
        recording_storage_path=storage_path,
        error_message=None,
    )


async def fail_session(db: AsyncSession, session_id: str, error_message: str) -> bool:
    """Active -> failed, storing the reason for the polling user."""
    return await _transition(
        db,
        session_id,
        CallToRecordSession.status.in_(ACTIVE_SESSION_STATUSES),
        status=CallToRecordStatus.FAILED,
        error_message=error_message[:1000],
    )


async def expire_stale_sessions(db: AsyncSession, now: datetime) -> int:
    """Fail every active session whose lifetime has passed."""
    result = await db.execute(
        update(CallToRecordSession)
        .where(
            CallToRecordSession.status.in_(ACTIVE_SESSION_STATUSES),
            CallToRecordSession.expires_at <= now,
        )
        .values(
            status=CallToRecordStatus.FAILED,
            error_message="Session expired before a recording was received.",
        ),
        execution_options=_NO_SYNC,
    )
    await db.commit()
    return result.rowcount or 0


async def create_saved_recording(
    db: AsyncSession,
    *,
    name: str,
    storage_path: str,
    recording_method: RecordingMethod,
    created_by: str | None,
    description: str | None = None,
    duration_seconds: int | None = None,
    file_size_bytes: int | None = None,
) -> SavedAudioRecording:
    """Add a recording to the library."""
    recording = SavedAudioRecording(
        name=name,
        description=description,
        storage_path=storage_path,
        duration_seconds=duration_seconds,
        file_size_bytes=file_size_bytes,
        recording_method=recording_method,
        created_by=created_by,
    )

    db.add(recording)
    await db.commit()
    await db.refresh(recording)

    return recording


async def get_saved_recording_by_path(
    db: AsyncSession, storage_path: str
) -> SavedAudioRecording | None:
    """Get a library recording by its storage path."""
    result = await db.execute(
        select(SavedAudioRecording).where(SavedAudioRecording.storage_path == storage_path)
    )
    return result.scalar_one_or_none()


async def list_saved_recordings(
    db: AsyncSession, user_id: str, limit: int = 50
) -> list[SavedAudioRecording]:
    """A user's library recordings, newest first."""
    result = await db.execute(
        select(SavedAudioRecording)
        .where(SavedAudioRecording.created_by == user_id)
        .order_by(SavedAudioRecording.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Robocall delivery history
# =============================================================================


async def create_robocall_message(
    db: AsyncSession,
    *,
    recording_method: RobocallMethod,
    text_content: str | None,
    audio_storage_path: str | None,
    from_name: str | None,
    phone_numbers: list[str],
    status: RobocallDeliveryStatus,
    success_count: int,
    fail_count: int,
    sent_by: str | None,
    sent_at: datetime,
    recipient_logs: list[dict[str, Any]],
) -> RobocallMessage:
    """
    Record a robocall send and one log row per recipient, in one commit.

    Each entry of ``recipient_logs`` holds the RobocallRecipientLog columns
    (phone_number, call_sid, status, error_code, error_message).
    """
    message = RobocallMessage(
        recording_method=recording_method,
        text_content=text_content,
        audio_storage_path=audio_storage_path,
        from_name=from_name,
        phone_numbers=phone_numbers,
        status=status,
        total_recipients=success_count + fail_count,
        success_count=success_count,
        fail_count=fail_count,
        sent_by=sent_by,
        sent_at=sent_at,
    )
    db.add(message)
    await db.flush()

    db.add_all(
        RobocallRecipientLog(robocall_message_id=message.id, position=position, **log)
        for position, log in enumerate(recipient_logs)
    )
    await db.commit()
    await db.refresh(message)

    return message


async def get_robocall_message(db: AsyncSession, message_id: str) -> RobocallMessage | None:
    result = await db.execute(select(RobocallMessage).where(RobocallMessage.id == message_id))
    return result.scalar_one_or_none()


async def list_robocall_messages(
    db: AsyncSession, limit: int = 50, offset: int = 0
) -> list[RobocallMessage]:
    """Robocall sends, newest first."""
    result = await db.execute(
        select(RobocallMessage)
        .order_by(RobocallMessage.sent_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def list_recipient_logs(db: AsyncSession, message_id: str) -> list[RobocallRecipientLog]:
    """Recipient outcomes for one send, in dispatch order."""
    result = await db.execute(
        select(RobocallRecipientLog)
        .where(RobocallRecipientLog.robocall_message_id == message_id)
        .order_by(RobocallRecipientLog.position)
    )
    return list(result.scalars().all())


# =============================================================================
# Scheduled robocalls
# =============================================================================


async def create_scheduled_robocall(
    db: AsyncSession,
    *,
    recording_method: RobocallMethod,
    text_content: str | None,
    audio_storage_path: str | None,
    from_name: str | None,
    phone_numbers: list[str],
    scheduled_for: datetime,
    created_by: str | None,
) -> ScheduledRobocall:
    """Create a pending scheduled robocall."""
    scheduled = ScheduledRobocall(
        recording_method=recording_method,
        text_content=text_content,
        audio_storage_path=audio_storage_path,
        from_name=from_name,
        phone_numbers=phone_numbers,
        scheduled_for=scheduled_for,
        status=ScheduledRobocallStatus.PENDING,
        created_by=created_by,
    )

    db.add(scheduled)
    await db.commit()
    await db.refresh(scheduled)

    return scheduled


async def get_scheduled_robocall(
    db: AsyncSession, schedule_id: str, user_id: str | None = None
) -> ScheduledRobocall | None:
    """Get a schedule by ID, optionally only if ``user_id`` created it."""
    query = select(ScheduledRobocall).where(ScheduledRobocall.id == schedule_id)
    if user_id is not None:
        query = query.where(ScheduledRobocall.created_by == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_scheduled_robocalls(
    db: AsyncSession, user_id: str, limit: int = 50
) -> list[ScheduledRobocall]:
    """A user's schedules, soonest first."""
    result = await db.execute(
        select(ScheduledRobocall)
        .where(ScheduledRobocall.created_by == user_id)
        .order_by(ScheduledRobocall.scheduled_for)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_due_scheduled_robocall_ids(db: AsyncSession, now: datetime) -> list[str]:
    """IDs of pending schedules whose time has come, oldest first."""
    result = await db.execute(
        select(ScheduledRobocall.id)
        .where(
            ScheduledRobocall.status == ScheduledRobocallStatus.PENDING,
            ScheduledRobocall.scheduled_for <= now,
        )
        .order_by(ScheduledRobocall.scheduled_for)
    )
    return list(result.scalars().all())


async def _transition_schedule(
    db: AsyncSession, schedule_id: str, *conditions, **values
) -> bool:
    result = await db.execute(
        update(ScheduledRobocall)
        .where(ScheduledRobocall.id == schedule_id, *conditions)
        .values(**values),
        execution_options=_NO_SYNC,
    )
    await db.commit()
    return result.rowcount == 1


async def claim_scheduled_robocall(db: AsyncSession, schedule_id: str) -> bool:
    """pending -> sending. Succeeds for exactly one scheduler tick."""
    return await _transition_schedule(
        db,
        schedule_id,
        ScheduledRobocall.status == ScheduledRobocallStatus.PENDING,
        status=ScheduledRobocallStatus.SENDING,
    )


async def cancel_scheduled_robocall(db: AsyncSession, schedule_id: str) -> bool:
    """pending -> cancelled."""
    return await _transition_schedule(
        db,
        schedule_id,
        ScheduledRobocall.status == ScheduledRobocallStatus.PENDING,
        status=ScheduledRobocallStatus.CANCELLED,
    )


async def mark_scheduled_robocall_sent(
    db: AsyncSession, schedule_id: str, robocall_message_id: str | None, sent_at: datetime
) -> bool:
    """sending -> sent, linking the delivery history entry."""
    return await _transition_schedule(
        db,
        schedule_id,
        ScheduledRobocall.status == ScheduledRobocallStatus.SENDING,
        status=ScheduledRobocallStatus.SENT,
        robocall_message_id=robocall_message_id,
        sent_at=sent_at,
    )


async def mark_scheduled_robocall_failed(
    db: AsyncSession,
    schedule_id: str,
    error_message: str,
    robocall_message_id: str | None = None,
) -> bool:
    """sending -> failed, storing the reason and any delivery history entry."""
    return await _transition_schedule(
        db,
        schedule_id,
        ScheduledRobocall.status == ScheduledRobocallStatus.SENDING,
        status=ScheduledRobocallStatus.FAILED,
        error_message=error_message[:1000],
        robocall_message_id=robocall_message_id,
    )
