"""
Tests for telephony background jobs.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.core.scheduler import JobScheduler
from app.modules.telephony import repository
from app.modules.telephony.dispatcher import CallDispatcher
from app.modules.telephony.jobs import (
    JOB_ID_EXPIRE_SESSIONS,
    JOB_ID_SEND_SCHEDULED_ROBOCALLS,
    JOB_ID_SWEEP_WEBHOOK_TOKENS,
    expire_call_to_record_sessions,
    register_telephony_jobs,
    send_scheduled_robocalls,
    sweep_webhook_tokens,
)
from app.modules.telephony.models import (
    CallToRecordStatus,
    RobocallMethod,
    ScheduledRobocallStatus,
)
from tests.fakes import SERVER_URL, rejected


class TestSweepWebhookTokens:
    """Tests for sweep_webhook_tokens."""

    @pytest.mark.asyncio
    async def test_deletes_expired_tokens(self, db, session_factory, token_store, clock):
        expired = await token_store.mint(db)
        clock.advance(minutes=45)
        fresh = await token_store.mint(db)
        clock.advance(minutes=20)

        stats = await sweep_webhook_tokens(session_factory, token_store)

        assert stats == {"deleted": 1, "error": None}
        assert await token_store.validate(db, expired) is False
        assert await token_store.validate(db, fresh) is True

    @pytest.mark.asyncio
    async def test_errors_are_reported_not_raised(self, token_store):
        def broken_factory():
            raise RuntimeError("database unavailable")

        stats = await sweep_webhook_tokens(broken_factory, token_store)

        assert stats["deleted"] == 0
        assert "database unavailable" in stats["error"]


class TestExpireCallToRecordSessions:
    """Tests for expire_call_to_record_sessions."""

    @pytest.mark.asyncio
    async def test_fails_only_stale_active_sessions(self, db, session_factory, user, clock):
        stale = await repository.create_session(
            db, user_id=user.id, phone_number="+15551234567", expires_at=clock() - timedelta(minutes=1)
        )
        live = await repository.create_session(
            db, user_id=user.id, phone_number="+15551234567", expires_at=clock() + timedelta(minutes=30)
        )
        done = await repository.create_session(
            db, user_id=user.id, phone_number="+15551234567", expires_at=clock() - timedelta(hours=2)
        )
        await repository.complete_session(db, done.id, "robocalls/recording_RE1.wav")

        stats = await expire_call_to_record_sessions(session_factory, clock)

        assert stats == {"expired": 1, "error": None}
        assert (await repository.get_session(db, stale.id)).status == CallToRecordStatus.FAILED
        assert (await repository.get_session(db, live.id)).status == CallToRecordStatus.PENDING
        assert (await repository.get_session(db, done.id)).status == CallToRecordStatus.COMPLETED


@pytest.fixture
def dispatcher(provider, token_store):
    return CallDispatcher(provider, token_store, server_url=SERVER_URL)


async def _schedule(db, user, clock, numbers, minutes_from_now):
    return await repository.create_scheduled_robocall(
        db,
        recording_method=RobocallMethod.TEXT_TO_SPEECH,
        text_content="School is closed tomorrow.",
        audio_storage_path=None,
        from_name=None,
        phone_numbers=numbers,
        scheduled_for=clock() + timedelta(minutes=minutes_from_now),
        created_by=user.id,
    )


class TestSendScheduledRobocalls:
    """Tests for send_scheduled_robocalls."""

    @pytest.mark.asyncio
    async def test_sends_only_due_schedules(
        self, db, session_factory, dispatcher, storage, provider, user, clock
    ):
        due = await _schedule(db, user, clock, ["+15550000001", "+15550000002"], -1)
        later = await _schedule(db, user, clock, ["+15550000003"], 30)

        stats = await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)

        assert stats == {"due": 1, "sent": 1, "failed": 0, "error": None}
        assert [c["to"] for c in provider.calls] == ["+15550000001", "+15550000002"]

        sent = await repository.get_scheduled_robocall(db, due.id)
        assert sent.status == ScheduledRobocallStatus.SENT
        assert sent.sent_at is not None
        message = await repository.get_robocall_message(db, sent.robocall_message_id)
        assert message.success_count == 2
        assert message.sent_by == user.id

        pending = await repository.get_scheduled_robocall(db, later.id)
        assert pending.status == ScheduledRobocallStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_run_does_not_resend(
        self, db, session_factory, dispatcher, storage, provider, user, clock
    ):
        await _schedule(db, user, clock, ["+15550000001"], -1)

        await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)
        stats = await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)

        assert stats["due"] == 0
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_schedule_is_skipped(
        self, db, session_factory, dispatcher, storage, provider, user, clock
    ):
        scheduled = await _schedule(db, user, clock, ["+15550000001"], -1)
        await repository.cancel_scheduled_robocall(db, scheduled.id)

        stats = await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)

        assert stats["due"] == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_every_call_rejected_fails_schedule(
        self, db, session_factory, dispatcher, storage, provider, user, clock
    ):
        provider.place_error = rejected(21211)
        scheduled = await _schedule(db, user, clock, ["+15550000001"], -1)

        stats = await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)

        assert stats == {"due": 1, "sent": 0, "failed": 1, "error": None}
        failed = await repository.get_scheduled_robocall(db, scheduled.id)
        assert failed.status == ScheduledRobocallStatus.FAILED
        assert failed.error_message == "No call could be placed."
        assert failed.robocall_message_id is not None

    @pytest.mark.asyncio
    async def test_missing_server_url_fails_schedule(
        self, db, session_factory, provider, token_store, storage, user, clock
    ):
        dispatcher = CallDispatcher(provider, token_store, server_url="")
        scheduled = await _schedule(db, user, clock, ["+15550000001"], -1)

        stats = await send_scheduled_robocalls(session_factory, dispatcher, storage, clock)

        assert stats["failed"] == 1
        failed = await repository.get_scheduled_robocall(db, scheduled.id)
        assert failed.status == ScheduledRobocallStatus.FAILED
        assert "SERVER_URL" in failed.error_message
        assert provider.calls == []


class TestRegisterTelephonyJobs:
    def test_registers_all_jobs(self):
        scheduler = MagicMock(spec=JobScheduler)

        register_telephony_jobs(scheduler)

        job_ids = [call.kwargs["job_id"] for call in scheduler.register_job.call_args_list]
        assert job_ids == [
            JOB_ID_SWEEP_WEBHOOK_TOKENS,
            JOB_ID_EXPIRE_SESSIONS,
            JOB_ID_SEND_SCHEDULED_ROBOCALLS,
        ]
