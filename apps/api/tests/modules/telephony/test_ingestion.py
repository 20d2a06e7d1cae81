"""
Tests for the recording ingestion pipeline.

These tests verify:
- Authorization: token purpose and session binding, then signature
- A completed recording is fetched once, stored once and the session completed
- Redelivered webhooks are no-ops
- Fetch and storage failures fail the session without raising
- A failed library entry never undoes a completed session
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from app.modules.telephony import repository
from app.modules.telephony.ingestion import (
    IngestionOutcome,
    RecordingIngestionPipeline,
    RecordingStatusEvent,
    recording_file_name,
)
from app.modules.telephony.models import CallToRecordStatus, WebhookTokenPurpose
from tests.fakes import fetch_failed

RECORDING_SID = "RE" + "a" * 32
CALLBACK_URL = "https://portal.example.org/api/v1/twilio/recording-status?sessionId=x&token=y"


def _form(**overrides) -> dict[str, str]:
    form = {
        "CallSid": "CA" + "b" * 32,
        "RecordingSid": RECORDING_SID,
        "RecordingUrl": f"https://api.twilio.com/Recordings/{RECORDING_SID}",
        "RecordingStatus": "completed",
        "RecordingDuration": "42",
    }
    form.update(overrides)
    return form


@pytest.fixture
def pipeline(provider, storage, token_store):
    return RecordingIngestionPipeline(provider, storage, token_store, verify_signatures=True)


@pytest_asyncio.fixture
async def session(db, user, clock):
    return await repository.create_session(
        db,
        user_id=user.id,
        phone_number="+15551234567",
        expires_at=clock() + timedelta(hours=1),
    )


@pytest_asyncio.fixture
async def recording_token(db, token_store, session):
    return await token_store.mint(
        db, WebhookTokenPurpose.RECORDING_STATUS, session_id=session.id
    )


async def _deliver(pipeline, db, session_id, token, form=None, signature="valid-signature"):
    return await pipeline.handle(
        db,
        token=token,
        session_id=session_id,
        url=CALLBACK_URL,
        form=form or _form(),
        signature=signature,
    )


class TestRecordingStatusEvent:
    """Tests for RecordingStatusEvent.from_form."""

    def test_parses_fields(self):
        event = RecordingStatusEvent.from_form("s1", _form())

        assert event.session_id == "s1"
        assert event.recording_sid == RECORDING_SID
        assert event.status == "completed"
        assert event.duration_seconds == 42

    @pytest.mark.parametrize("duration", ["", "abc"])
    def test_bad_duration_is_none(self, duration):
        event = RecordingStatusEvent.from_form("s1", _form(RecordingDuration=duration))

        assert event.duration_seconds is None

    def test_file_name(self):
        assert recording_file_name(RECORDING_SID) == f"recording_{RECORDING_SID}.wav"


class TestAuthorization:
    """Tests for token and signature checks."""

    @pytest.mark.asyncio
    async def test_unknown_token_is_rejected(self, db, pipeline, session, provider):
        outcome = await _deliver(pipeline, db, session.id, "0" * 64)

        assert outcome == IngestionOutcome.REJECTED
        assert provider.fetches == []

    @pytest.mark.asyncio
    async def test_instruction_token_is_rejected(self, db, pipeline, session, token_store):
        token = await token_store.mint(db, WebhookTokenPurpose.INSTRUCTION, session_id=session.id)

        outcome = await _deliver(pipeline, db, session.id, token)

        assert outcome == IngestionOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_token_for_another_session_is_rejected(self, db, pipeline, token_store, session):
        token = await token_store.mint(
            db, WebhookTokenPurpose.RECORDING_STATUS, session_id=str(uuid.uuid4())
        )

        outcome = await _deliver(pipeline, db, session.id, token)

        assert outcome == IngestionOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected(self, db, pipeline, session, recording_token, clock):
        clock.advance(hours=1, seconds=1)

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(
        self, db, pipeline, session, recording_token, provider, storage
    ):
        provider.signature_valid = False

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.REJECTED
        assert provider.fetches == []
        assert storage.upload_count == 0
        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, db, pipeline, session, recording_token):
        outcome = await _deliver(pipeline, db, session.id, recording_token, signature=None)

        assert outcome == IngestionOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_signature_check_can_be_disabled(
        self, db, provider, storage, token_store, session, recording_token
    ):
        provider.signature_valid = False
        pipeline = RecordingIngestionPipeline(
            provider, storage, token_store, verify_signatures=False
        )

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.COMPLETED


class TestIngest:
    """Tests for processing authorized deliveries."""

    @pytest.mark.asyncio
    async def test_completed_recording(
        self, db, pipeline, session, recording_token, provider, storage, user
    ):
        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.COMPLETED
        assert provider.fetches == [RECORDING_SID]
        assert storage.upload_count == 1

        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.COMPLETED
        assert current.recording_sid == RECORDING_SID
        assert current.recording_storage_path == f"robocalls/recording_{RECORDING_SID}.wav"
        assert current.recording_duration_seconds == 42
        assert storage.objects[current.recording_storage_path] == provider.audio

        library = await repository.list_saved_recordings(db, user.id, 10)
        assert [r.storage_path for r in library] == [current.recording_storage_path]

    @pytest.mark.asyncio
    async def test_library_failure_keeps_session_completed(
        self, db, pipeline, session, recording_token, storage, user, monkeypatch
    ):
        monkeypatch.setattr(
            repository,
            "create_saved_recording",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("connection lost"))),
        )

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.COMPLETED
        assert storage.upload_count == 1
        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.COMPLETED
        assert current.error_message is None
        assert await repository.list_saved_recordings(db, user.id, 10) == []

    @pytest.mark.asyncio
    async def test_redelivery_is_a_noop(
        self, db, pipeline, session, recording_token, provider, storage
    ):
        first = await _deliver(pipeline, db, session.id, recording_token)
        second = await _deliver(pipeline, db, session.id, recording_token)

        assert first == IngestionOutcome.COMPLETED
        assert second == IngestionOutcome.DUPLICATE
        assert len(provider.fetches) == 1
        assert storage.upload_count == 1

    @pytest.mark.asyncio
    async def test_claimed_session_is_not_processed_again(
        self, db, pipeline, session, provider, storage
    ):
        # Another delivery has claimed the session and is mid-fetch
        await repository.claim_recording(
            db, session.id, recording_sid=RECORDING_SID, recording_url=None, duration_seconds=None
        )

        outcome = await pipeline.ingest(
            db, RecordingStatusEvent.from_form(session.id, _form())
        )

        assert outcome == IngestionOutcome.DUPLICATE
        assert provider.fetches == []
        assert storage.upload_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["in-progress", "absent", "failed"])
    async def test_non_completed_status_is_ignored(
        self, db, pipeline, session, recording_token, provider, status
    ):
        outcome = await _deliver(
            pipeline, db, session.id, recording_token, form=_form(RecordingStatus=status)
        )

        assert outcome == IngestionOutcome.IGNORED
        assert provider.fetches == []
        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_session_is_ignored(self, db, pipeline, provider):
        event = RecordingStatusEvent.from_form(str(uuid.uuid4()), _form())

        assert await pipeline.ingest(db, event) == IngestionOutcome.IGNORED
        assert provider.fetches == []

    @pytest.mark.asyncio
    async def test_fetch_failure_fails_session(
        self, db, pipeline, session, recording_token, provider, storage
    ):
        provider.fetch_error = fetch_failed()

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.FAILED
        assert storage.upload_count == 0
        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.FAILED
        assert "404" in current.error_message

        # A retry of the same webhook doesn't resurrect the session
        provider.fetch_error = None
        again = await _deliver(pipeline, db, session.id, recording_token)
        assert again == IngestionOutcome.DUPLICATE
        assert storage.upload_count == 0

    @pytest.mark.asyncio
    async def test_storage_failure_fails_session(
        self, db, pipeline, session, recording_token, storage
    ):
        storage.fail_uploads = True

        outcome = await _deliver(pipeline, db, session.id, recording_token)

        assert outcome == IngestionOutcome.FAILED
        current = await repository.get_session(db, session.id)
        assert current.status == CallToRecordStatus.FAILED
        assert "Failed to store recording" in current.error_message
