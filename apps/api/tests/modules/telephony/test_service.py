"""
Tests for the robocall and call-to-record service layer.
"""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from app.core.auth import CurrentUser
from app.core.config import settings
from app.modules.telephony import repository, service
from app.modules.telephony.dispatcher import CallDispatcher
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
)
from app.modules.telephony.models import (
    CallToRecordStatus,
    RecordingMethod,
    RobocallDeliveryStatus,
    ScheduledRobocallStatus,
)
from app.modules.telephony.schemas import (
    RobocallMethod,
    RobocallRequest,
    ScheduledRobocallRequest,
)
from tests.fakes import SERVER_URL, rejected


def _query(url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def dispatcher(provider, token_store):
    return CallDispatcher(provider, token_store, server_url=SERVER_URL)


@pytest.fixture
def current_user(user):
    return CurrentUser(id=user.id, email=user.email, role=user.role.value, name=user.full_name)


@pytest_asyncio.fixture
async def library_recording(db, user, storage):
    stored = await storage.upload(b"RIFF", "greeting.wav", "audio/wav")
    return await repository.create_saved_recording(
        db,
        name="Greeting",
        storage_path=stored.path,
        recording_method=RecordingMethod.UPLOAD,
        created_by=user.id,
    )


class TestPrepareRecipients:
    """Tests for prepare_recipients."""

    def test_normalizes_dedupes_and_reports_invalid(self):
        valid, invalid = service.prepare_recipients(
            ["(555) 123-4567", "+15551234567", "12", "5559876543", "bogus"]
        )

        assert valid == ["+15551234567", "+15559876543"]
        assert invalid == ["12", "bogus"]


class TestSendRobocall:
    """Tests for send_robocall."""

    @pytest.mark.asyncio
    async def test_text_to_speech(self, db, dispatcher, storage, provider, current_user):
        data = RobocallRequest(
            recording_method=RobocallMethod.TEXT_TO_SPEECH,
            text_content="  Early dismissal today.  ",
            from_name="Main Office",
            phone_numbers=["5551234567", "555-123-4567", "123"],
        )

        result = await service.send_robocall(db, dispatcher, storage, current_user, data)

        assert result.total == 1
        assert result.succeeded == 1
        assert result.failed == 0
        assert result.invalid_numbers == ["123"]
        query = _query(provider.calls[0]["instruction_url"])
        assert query["message"] == "Early dismissal today."
        assert query["fromName"] == "Main Office"

    @pytest.mark.asyncio
    async def test_partial_failure(self, db, dispatcher, storage, provider, current_user):
        original = provider.place_call

        async def place_call(to, instruction_url, *, recording_status_url=None):
            if to.endswith("0002"):
                raise rejected(21211)
            return await original(to, instruction_url)

        provider.place_call = place_call
        data = RobocallRequest(
            recording_method=RobocallMethod.TEXT_TO_SPEECH,
            text_content="Hello",
            phone_numbers=["5550000001", "5550000002"],
        )

        result = await service.send_robocall(db, dispatcher, storage, current_user, data)

        assert (result.succeeded, result.failed) == (1, 1)
        assert result.results[1].error_category == "invalid_number"

    @pytest.mark.asyncio
    async def test_no_valid_numbers(self, db, dispatcher, storage, current_user):
        data = RobocallRequest(
            recording_method=RobocallMethod.TEXT_TO_SPEECH,
            text_content="Hello",
            phone_numbers=["123", "abc"],
        )

        with pytest.raises(InvalidDestinationError):
            await service.send_robocall(db, dispatcher, storage, current_user, data)

    @pytest.mark.asyncio
    async def test_audio_uses_signed_library_url(
        self, db, dispatcher, storage, provider, current_user, library_recording
    ):
        data = RobocallRequest(
            recording_method=RobocallMethod.AUDIO,
            audio_storage_path=library_recording.storage_path,
            phone_numbers=["5551234567"],
        )

        result = await service.send_robocall(db, dispatcher, storage, current_user, data)

        assert result.succeeded == 1
        query = _query(provider.calls[0]["instruction_url"])
        assert query["audioUrl"] == (
            f"https://storage.example/{library_recording.storage_path}?signature=test"
        )
        assert provider.calls[0]["instruction_url"].startswith(
            f"{SERVER_URL}/api/v1/twilio/robocall-audio?"
        )

    @pytest.mark.asyncio
    async def test_audio_outside_library_is_rejected(
        self, db, dispatcher, storage, provider, current_user
    ):
        data = RobocallRequest(
            recording_method=RobocallMethod.AUDIO,
            audio_storage_path="robocalls/not-in-library.wav",
            phone_numbers=["5551234567"],
        )

        with pytest.raises(RecordingNotFoundError):
            await service.send_robocall(db, dispatcher, storage, current_user, data)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_send_is_recorded_in_history(
        self, db, dispatcher, storage, provider, current_user
    ):
        original = provider.place_call

        async def place_call(to, instruction_url, *, recording_status_url=None):
            if to.endswith("0002"):
                raise rejected(21211)
            return await original(to, instruction_url)

        provider.place_call = place_call
        data = RobocallRequest(
            recording_method=RobocallMethod.TEXT_TO_SPEECH,
            text_content="  Snow day.  ",
            phone_numbers=["5550000001", "5550000002"],
        )

        result = await service.send_robocall(db, dispatcher, storage, current_user, data)

        details = await service.get_robocall_details(db, result.robocall_message_id)
        assert details.status == RobocallDeliveryStatus.PARTIAL
        assert (details.total_recipients, details.success_count, details.fail_count) == (2, 1, 1)
        assert details.text_content == "Snow day."
        assert details.sent_by == current_user.id
        assert [r.phone_number for r in details.recipients] == ["+15550000001", "+15550000002"]
        assert [r.status for r in details.recipients] == ["queued", "failed"]
        assert details.recipients[0].call_sid == result.results[0].call_sid
        assert details.recipients[1].error_code == "INVALID_NUMBER"

    @pytest.mark.asyncio
    async def test_history_failure_does_not_fail_send(
        self, db, dispatcher, storage, provider, current_user, monkeypatch
    ):
        monkeypatch.setattr(
            repository,
            "create_robocall_message",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("connection lost"))),
        )
        data = RobocallRequest(
            recording_method=RobocallMethod.TEXT_TO_SPEECH,
            text_content="Hello",
            phone_numbers=["5551234567"],
        )

        result = await service.send_robocall(db, dispatcher, storage, current_user, data)

        assert result.succeeded == 1
        assert result.robocall_message_id is None
        assert len(provider.calls) == 1


class TestRobocallRequest:
    """Tests for RobocallRequest validation."""

    def test_text_required_for_tts(self):
        with pytest.raises(ValueError):
            RobocallRequest(
                recording_method=RobocallMethod.TEXT_TO_SPEECH,
                text_content="   ",
                phone_numbers=["5551234567"],
            )

    def test_path_required_for_audio(self):
        with pytest.raises(ValueError):
            RobocallRequest(recording_method=RobocallMethod.AUDIO, phone_numbers=["5551234567"])


class TestStartCallToRecord:
    """Tests for start_call_to_record."""

    @pytest.mark.asyncio
    async def test_creates_calling_session(self, db, dispatcher, provider, current_user, clock):
        session = await service.start_call_to_record(
            db, dispatcher, current_user, "555-123-4567", clock=clock
        )

        assert session.status == CallToRecordStatus.CALLING
        assert session.phone_number == "+15551234567"
        assert session.call_sid == provider.calls[0]["sid"]
        assert session.user_id == current_user.id
        assert session.expires_at.replace(tzinfo=None) == (
            clock.now + timedelta(hours=1)
        ).replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_rejected_call_fails_session(self, db, dispatcher, provider, current_user):
        provider.place_error = rejected(21408)

        with pytest.raises(CallToRecordFailedError) as exc_info:
            await service.start_call_to_record(db, dispatcher, current_user, "5551234567")

        error = exc_info.value
        assert error.error_code == "PERMISSION_DENIED"
        assert error.retryable is False
        assert error.status_code == 502

        session = await repository.get_session(db, error.session_id)
        assert session.status == CallToRecordStatus.FAILED
        assert session.error_message

    @pytest.mark.asyncio
    async def test_invalid_number(self, db, dispatcher, provider, current_user):
        with pytest.raises(InvalidDestinationError):
            await service.start_call_to_record(db, dispatcher, current_user, "12")

        assert provider.calls == []


class TestGetCallToRecordSession:
    """Tests for get_call_to_record_session."""

    @pytest.mark.asyncio
    async def test_owner_sees_signed_url_once_completed(
        self, db, dispatcher, storage, current_user
    ):
        session = await service.start_call_to_record(db, dispatcher, current_user, "5551234567")
        stored = await storage.upload(b"RIFF", "recording_RE1.wav", "audio/wav")
        await repository.complete_session(db, session.id, stored.path)

        response = await service.get_call_to_record_session(db, storage, current_user, session.id)

        assert response.status == CallToRecordStatus.COMPLETED
        assert response.signed_url == f"https://storage.example/{stored.path}?signature=test"

    @pytest.mark.asyncio
    async def test_pending_session_has_no_url(self, db, dispatcher, storage, current_user):
        session = await service.start_call_to_record(db, dispatcher, current_user, "5551234567")

        response = await service.get_call_to_record_session(db, storage, current_user, session.id)

        assert response.status == CallToRecordStatus.CALLING
        assert response.signed_url is None

    @pytest.mark.asyncio
    async def test_other_users_session_is_not_found(self, db, dispatcher, storage, current_user):
        session = await service.start_call_to_record(db, dispatcher, current_user, "5551234567")
        stranger = CurrentUser(
            id=str(uuid.uuid4()), email="x@example.org", role="school_admin", name=None
        )

        with pytest.raises(SessionNotFoundError):
            await service.get_call_to_record_session(db, storage, stranger, session.id)


class TestListRecordings:
    """Tests for list_recordings."""

    @pytest.mark.asyncio
    async def test_lists_own_recordings_with_urls(
        self, db, storage, current_user, library_recording
    ):
        result = await service.list_recordings(db, storage, current_user)

        assert len(result.recordings) == 1
        assert result.recordings[0].name == "Greeting"
        assert result.recordings[0].url.endswith("?signature=test")


class TestUploadRecording:
    """Tests for upload_recording."""

    async def _upload(self, db, storage, current_user, clock, **overrides):
        kwargs = {
            "name": "Snow Day",
            "description": "Closing announcement",
            "data": b"ID3\x03\x00\x00\x00",
            "content_type": "audio/mpeg",
            "clock": clock,
        }
        kwargs.update(overrides)
        return await service.upload_recording(db, storage, current_user, **kwargs)

    @pytest.mark.asyncio
    async def test_upload_adds_library_entry(self, db, storage, current_user, clock):
        result = await self._upload(db, storage, current_user, clock)

        stamp = int(clock().timestamp() * 1000)
        assert result.storage_path == f"robocalls/Snow_Day_{stamp}.mp3"
        assert result.recording_method == RecordingMethod.UPLOAD
        assert result.file_size_bytes == 7
        assert result.description == "Closing announcement"
        assert result.url == f"https://storage.example/{result.storage_path}"
        assert storage.objects[result.storage_path] == b"ID3\x03\x00\x00\x00"

        library = await service.list_recordings(db, storage, current_user)
        assert [r.id for r in library.recordings] == [result.id]

    @pytest.mark.asyncio
    async def test_same_name_does_not_overwrite(self, db, storage, current_user, clock):
        first = await self._upload(db, storage, current_user, clock)
        clock.advance(seconds=1)
        second = await self._upload(db, storage, current_user, clock)

        assert first.storage_path != second.storage_path
        assert storage.upload_count == 2

    @pytest.mark.asyncio
    async def test_wav_with_parameters(self, db, storage, current_user, clock):
        result = await self._upload(
            db, storage, current_user, clock, content_type="audio/wav; codecs=1"
        )

        assert result.storage_path.endswith(".wav")

    @pytest.mark.asyncio
    async def test_unsupported_type(self, db, storage, current_user, clock):
        with pytest.raises(InvalidAudioUploadError) as exc_info:
            await self._upload(db, storage, current_user, clock, content_type="audio/ogg")

        assert exc_info.value.status_code == 415
        assert storage.upload_count == 0

    @pytest.mark.asyncio
    async def test_empty_file(self, db, storage, current_user, clock):
        with pytest.raises(InvalidAudioUploadError) as exc_info:
            await self._upload(db, storage, current_user, clock, data=b"")

        assert exc_info.value.error_code == "EMPTY_AUDIO_FILE"

    @pytest.mark.asyncio
    async def test_too_large(self, db, storage, current_user, clock, monkeypatch):
        monkeypatch.setattr(settings, "max_audio_upload_bytes", 4)

        with pytest.raises(InvalidAudioUploadError) as exc_info:
            await self._upload(db, storage, current_user, clock)

        assert exc_info.value.status_code == 413
        assert storage.upload_count == 0

    @pytest.mark.asyncio
    async def test_blank_name(self, db, storage, current_user, clock):
        with pytest.raises(InvalidAudioUploadError):
            await self._upload(db, storage, current_user, clock, name="   ")

    @pytest.mark.asyncio
    async def test_storage_failure(self, db, storage, current_user, clock):
        storage.fail_uploads = True

        with pytest.raises(StorageUploadError):
            await self._upload(db, storage, current_user, clock)

        library = await service.list_recordings(db, storage, current_user)
        assert library.recordings == []


class TestRobocallHistory:
    """Tests for list_robocall_history and get_robocall_details."""

    @pytest.mark.asyncio
    async def test_newest_first(self, db, dispatcher, storage, current_user, clock):
        for text in ("First", "Second"):
            data = RobocallRequest(
                recording_method=RobocallMethod.TEXT_TO_SPEECH,
                text_content=text,
                phone_numbers=["5551234567"],
            )
            await service.send_robocall(db, dispatcher, storage, current_user, data, clock=clock)
            clock.advance(minutes=5)

        history = await service.list_robocall_history(db)

        assert [m.text_content for m in history.messages] == ["Second", "First"]
        assert history.messages[0].status == RobocallDeliveryStatus.COMPLETED

        page = await service.list_robocall_history(db, limit=1, offset=1)
        assert [m.text_content for m in page.messages] == ["First"]

    @pytest.mark.asyncio
    async def test_unknown_message(self, db):
        with pytest.raises(RobocallNotFoundError):
            await service.get_robocall_details(db, str(uuid.uuid4()))


class TestScheduledRobocalls:
    """Tests for scheduling, listing, cancelling and sending scheduled robocalls."""

    def _request(self, scheduled_for, **overrides) -> ScheduledRobocallRequest:
        fields = {
            "recording_method": RobocallMethod.TEXT_TO_SPEECH,
            "text_content": "  Picture day tomorrow.  ",
            "phone_numbers": ["(555) 123-4567", "bad"],
            "scheduled_for": scheduled_for,
        }
        fields.update(overrides)
        return ScheduledRobocallRequest(**fields)

    @pytest.mark.asyncio
    async def test_creates_pending_schedule(self, db, provider, current_user, clock):
        result = await service.schedule_robocall(
            db, current_user, self._request(clock() + timedelta(hours=1)), clock=clock
        )

        assert result.status == ScheduledRobocallStatus.PENDING
        assert result.phone_numbers == ["+15551234567"]
        assert result.invalid_numbers == ["bad"]
        assert result.text_content == "Picture day tomorrow."
        assert provider.calls == []

        listed = await service.list_scheduled_robocalls(db, current_user)
        assert [s.id for s in listed.scheduled] == [result.id]

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, db, current_user, clock):
        with pytest.raises(InvalidScheduleTimeError):
            await service.schedule_robocall(
                db, current_user, self._request(clock() - timedelta(minutes=1)), clock=clock
            )

    @pytest.mark.asyncio
    async def test_time_without_timezone_rejected(self, db, current_user, clock):
        with pytest.raises(InvalidScheduleTimeError):
            await service.schedule_robocall(
                db, current_user, self._request(datetime(2030, 1, 1, 9, 0)), clock=clock
            )

    @pytest.mark.asyncio
    async def test_no_valid_numbers(self, db, current_user, clock):
        request = self._request(clock() + timedelta(hours=1), phone_numbers=["bad"])

        with pytest.raises(InvalidDestinationError):
            await service.schedule_robocall(db, current_user, request, clock=clock)

    @pytest.mark.asyncio
    async def test_audio_must_be_in_library(self, db, current_user, clock):
        request = self._request(
            clock() + timedelta(hours=1),
            recording_method=RobocallMethod.AUDIO,
            audio_storage_path="robocalls/missing.mp3",
        )

        with pytest.raises(RecordingNotFoundError):
            await service.schedule_robocall(db, current_user, request, clock=clock)

    @pytest.mark.asyncio
    async def test_cancel(self, db, current_user, clock):
        scheduled = await service.schedule_robocall(
            db, current_user, self._request(clock() + timedelta(hours=1)), clock=clock
        )

        cancelled = await service.cancel_scheduled_robocall(db, current_user, scheduled.id)
        assert cancelled.status == ScheduledRobocallStatus.CANCELLED

        with pytest.raises(ScheduledRobocallNotPendingError) as exc_info:
            await service.cancel_scheduled_robocall(db, current_user, scheduled.id)
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_other_users_schedule(self, db, current_user, clock):
        scheduled = await service.schedule_robocall(
            db, current_user, self._request(clock() + timedelta(hours=1)), clock=clock
        )
        stranger = CurrentUser(
            id=str(uuid.uuid4()), email="x@example.org", role="school_admin", name=None
        )

        with pytest.raises(ScheduledRobocallNotFoundError):
            await service.cancel_scheduled_robocall(db, stranger, scheduled.id)

    @pytest.mark.asyncio
    async def test_schedule_is_sent_once(
        self, db, dispatcher, storage, provider, current_user, clock
    ):
        scheduled = await service.schedule_robocall(
            db,
            current_user,
            self._request(datetime(2026, 3, 1, 14, 0, tzinfo=UTC)),
            clock=clock,
        )
        clock.advance(hours=2)

        first = await service.send_scheduled_robocall(
            db, dispatcher, storage, scheduled.id, clock=clock
        )
        second = await service.send_scheduled_robocall(
            db, dispatcher, storage, scheduled.id, clock=clock
        )

        assert first == ScheduledRobocallStatus.SENT
        assert second is None
        assert [c["to"] for c in provider.calls] == ["+15551234567"]
        query = _query(provider.calls[0]["instruction_url"])
        assert query["message"] == "Picture day tomorrow."
        assert query["fromName"] == settings.sender_display_name

        with pytest.raises(ScheduledRobocallNotPendingError):
            await service.cancel_scheduled_robocall(db, current_user, scheduled.id)
