"""
Recording Ingestion Pipeline

Handles Twilio's asynchronous "recording finished" callback for
call-to-record sessions.

Processing Flow:
1. Reject if the token is missing, expired, never minted, minted for a
   different purpose, or bound to a different session
2. Reject if the X-Twilio-Signature header doesn't verify against the auth
   token and the reconstructed public URL (a leaked token alone is useless)
3. Ignore callbacks that aren't "completed" or lack required fields
4. Claim the session for this recording; a redelivered webhook loses the
   claim and stops here, before any download or upload
5. Download the WAV from Twilio; on failure mark the session failed
6. Upload to object storage as recording_<RecordingSid>.wav; on success mark
   the session completed, on failure mark it failed
7. Best effort: add the recording to the initiator's library

Fetch and storage failures are terminal for the session and never retried.
They reach the user through session status polling, never through the
webhook response.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.storage import ObjectStorage, StorageError
from app.modules.telephony import repository
from app.modules.telephony.errors import StorageUploadError, TelephonyError
from app.modules.telephony.models import RecordingMethod, WebhookTokenPurpose
from app.modules.telephony.provider import TelephonyProvider
from app.modules.telephony.tokens import WebhookTokenStore

logger = logging.getLogger(__name__)

RECORDING_CONTENT_TYPE = "audio/wav"


class IngestionOutcome(str, Enum):
    """What a recording-status delivery did."""

    REJECTED = "rejected"  # Token or signature failed (403)
    IGNORED = "ignored"  # Not a completed recording, or unknown session
    DUPLICATE = "duplicate"  # Session already claimed or terminal
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordingStatusEvent:
    """The fields of Twilio's recording-status POST this pipeline uses."""

    session_id: str | None
    call_sid: str | None
    recording_sid: str | None
    recording_url: str | None
    status: str | None
    duration_seconds: int | None

    @classmethod
    def from_form(cls, session_id: str | None, form: dict[str, str]) -> "RecordingStatusEvent":
        duration = form.get("RecordingDuration")
        try:
            duration_seconds = int(duration) if duration else None
        except ValueError:
            duration_seconds = None

        return cls(
            session_id=session_id,
            call_sid=form.get("CallSid"),
            recording_sid=form.get("RecordingSid"),
            recording_url=form.get("RecordingUrl"),
            status=form.get("RecordingStatus"),
            duration_seconds=duration_seconds,
        )


def recording_file_name(recording_sid: str) -> str:
    return f"recording_{recording_sid}.wav"


class RecordingIngestionPipeline:
    """
    Authorizes and processes recording-status callbacks.

    Args:
        provider: Verifies signatures and downloads recordings
        storage: Durable object storage for the WAV files
        token_store: Validates the callback's token
        verify_signatures: Check X-Twilio-Signature (defaults to
            settings.signature_validation_enabled)
    """

    def __init__(
        self,
        provider: TelephonyProvider,
        storage: ObjectStorage,
        token_store: WebhookTokenStore,
        verify_signatures: bool = True,
    ):
        self._provider = provider
        self._storage = storage
        self._tokens = token_store
        self._verify_signatures = verify_signatures

    async def authorize(
        self,
        db: AsyncSession,
        *,
        token: str | None,
        session_id: str | None,
        url: str,
        params: dict[str, str],
        signature: str | None,
    ) -> bool:
        """Check the callback's token, then its Twilio signature."""
        if not session_id or not await self._tokens.validate(
            db, token, WebhookTokenPurpose.RECORDING_STATUS, session_id=session_id
        ):
            logger.warning("Rejected recording-status webhook: invalid or expired token")
            return False

        if self._verify_signatures and not self._provider.verify_signature(url, params, signature):
            logger.warning(
                f"Rejected recording-status webhook for session {session_id}: bad signature"
            )
            return False

        return True

    async def handle(
        self,
        db: AsyncSession,
        *,
        token: str | None,
        session_id: str | None,
        url: str,
        form: dict[str, str],
        signature: str | None,
    ) -> IngestionOutcome:
        """Authorize a delivery and, if allowed, ingest it."""
        authorized = await self.authorize(
            db,
            token=token,
            session_id=session_id,
            url=url,
            params=form,
            signature=signature,
        )
        if not authorized:
            return IngestionOutcome.REJECTED

        return await self.ingest(db, RecordingStatusEvent.from_form(session_id, form))

    async def ingest(self, db: AsyncSession, event: RecordingStatusEvent) -> IngestionOutcome:
        """Process an authorized recording-status event. Safe to call repeatedly."""
        if event.status != "completed" or not event.session_id or not event.recording_sid:
            logger.info(
                f"Ignoring recording status '{event.status}' for session {event.session_id}"
            )
            return IngestionOutcome.IGNORED

        session = await repository.get_session(db, event.session_id)
        if session is None:
            logger.warning(f"Recording status for unknown session {event.session_id}")
            return IngestionOutcome.IGNORED

        if session.is_terminal:
            logger.info(f"Session {session.id} already {session.status.value}, skipping")
            return IngestionOutcome.DUPLICATE

        claimed = await repository.claim_recording(
            db,
            session.id,
            recording_sid=event.recording_sid,
            recording_url=event.recording_url,
            duration_seconds=event.duration_seconds,
        )
        if not claimed:
            logger.info(f"Session {session.id} already claimed by another delivery, skipping")
            return IngestionOutcome.DUPLICATE

        try:
            audio = await self._provider.fetch_recording(event.recording_sid)
        except TelephonyError as e:
            logger.error(f"Failed to fetch recording for session {session.id}: {e.message}")
            await repository.fail_session(db, session.id, e.message)
            return IngestionOutcome.FAILED

        try:
            stored = await self._storage.upload(
                audio, recording_file_name(event.recording_sid), RECORDING_CONTENT_TYPE
            )
        except StorageError as e:
            error = StorageUploadError(f"Failed to store recording: {e}")
            logger.error(f"Session {session.id}: {error.message}")
            await repository.fail_session(db, session.id, error.message)
            return IngestionOutcome.FAILED

        completed = await repository.complete_session(db, session.id, stored.path)
        if not completed:
            logger.warning(f"Session {session.id} left the active state during ingestion")
            return IngestionOutcome.FAILED

        logger.info(f"Session {session.id} completed: {stored.path} ({len(audio)} bytes)")

        if session.user_id:
            await self._save_to_library(db, session.user_id, stored.path, event, len(audio))

        return IngestionOutcome.COMPLETED

    async def _save_to_library(
        self,
        db: AsyncSession,
        user_id: str,
        storage_path: str,
        event: RecordingStatusEvent,
        size: int,
    ) -> None:
        try:
            await repository.create_saved_recording(
                db,
                name=f"Phone recording {event.recording_sid[-6:]}",
                description="Recorded by phone",
                storage_path=storage_path,
                recording_method=RecordingMethod.CALL_TO_RECORD,
                created_by=user_id,
                duration_seconds=event.duration_seconds,
                file_size_bytes=size,
            )
        except Exception as e:
            await db.rollback()
            logger.error(f"Could not add recording {storage_path} to library: {e}")


__all__ = [
    "IngestionOutcome",
    "RecordingIngestionPipeline",
    "RecordingStatusEvent",
    "recording_file_name",
]
