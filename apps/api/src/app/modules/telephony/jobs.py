"""
Telephony Background Jobs

Scheduled work for the telephony module:
1. Delete expired webhook tokens
2. Fail call-to-record sessions that outlived their one-hour window
3. Send scheduled robocalls whose time has come

Design Principles:
- Jobs are idempotent and safe to run concurrently from several instances
- Jobs handle their own database sessions
- A failed run is logged and retried on the next tick

Schedule:
- Housekeeping runs every WEBHOOK_TOKEN_SWEEP_INTERVAL_MINUTES (default 5)
- Scheduled robocalls are polled every SCHEDULED_ROBOCALL_POLL_INTERVAL_MINUTES
  (default 1)
- Jobs can also be triggered manually via the debug endpoints
"""

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import async_session_maker
from app.core.scheduler import JobScheduler
from app.core.storage import ObjectStorage, StorageError, get_storage
from app.modules.telephony import repository, service
from app.modules.telephony.dispatcher import CallDispatcher
from app.modules.telephony.errors import TelephonyConfigurationError
from app.modules.telephony.models import ScheduledRobocallStatus
from app.modules.telephony.provider import get_telephony_provider
from app.modules.telephony.tokens import Clock, WebhookTokenStore, utc_now

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

# Job IDs for registration and manual triggering
JOB_ID_SWEEP_WEBHOOK_TOKENS = "telephony_sweep_webhook_tokens"
JOB_ID_EXPIRE_SESSIONS = "telephony_expire_call_to_record_sessions"
JOB_ID_SEND_SCHEDULED_ROBOCALLS = "telephony_send_scheduled_robocalls"


async def sweep_webhook_tokens(
    session_factory: SessionFactory = async_session_maker,
    token_store: WebhookTokenStore | None = None,
) -> dict[str, Any]:
    """
    Delete every expired webhook token.

    Returns:
        Dict with the number of tokens deleted and any error
    """
    token_store = token_store or WebhookTokenStore()
    stats: dict[str, Any] = {"deleted": 0, "error": None}

    try:
        async with session_factory() as db:
            stats["deleted"] = await token_store.sweep_expired(db)
    except Exception as e:
        logger.error(f"Webhook token sweep failed: {e}", exc_info=True)
        stats["error"] = str(e)
        return stats

    if stats["deleted"]:
        logger.info(f"Deleted {stats['deleted']} expired webhook tokens")
    else:
        logger.debug("No expired webhook tokens to delete")

    return stats


async def expire_call_to_record_sessions(
    session_factory: SessionFactory = async_session_maker,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """
    Mark pending or calling sessions past their expiry as failed.

    Returns:
        Dict with the number of sessions expired and any error
    """
    stats: dict[str, Any] = {"expired": 0, "error": None}

    try:
        async with session_factory() as db:
            stats["expired"] = await repository.expire_stale_sessions(db, clock())
    except Exception as e:
        logger.error(f"Call-to-record session expiry failed: {e}", exc_info=True)
        stats["error"] = str(e)
        return stats

    if stats["expired"]:
        logger.info(f"Expired {stats['expired']} stale call-to-record sessions")

    return stats


async def send_scheduled_robocalls(
    session_factory: SessionFactory = async_session_maker,
    dispatcher: CallDispatcher | None = None,
    storage: ObjectStorage | None = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """
    Dispatch every pending scheduled robocall that is due.

    Schedules stay pending while Twilio or storage are not configured, and
    are picked up on a later tick once they are.

    Returns:
        Dict with counts of due, sent and failed schedules and any error
    """
    stats: dict[str, Any] = {"due": 0, "sent": 0, "failed": 0, "error": None}

    try:
        dispatcher = dispatcher or CallDispatcher(get_telephony_provider(), WebhookTokenStore())
        storage = storage or get_storage()
    except (TelephonyConfigurationError, StorageError) as e:
        logger.error(f"Scheduled robocalls skipped: {e}")
        stats["error"] = str(e)
        return stats

    try:
        async with session_factory() as db:
            due = await repository.list_due_scheduled_robocall_ids(db, clock())
            stats["due"] = len(due)
            for schedule_id in due:
                outcome = await service.send_scheduled_robocall(
                    db, dispatcher, storage, schedule_id, clock
                )
                if outcome == ScheduledRobocallStatus.SENT:
                    stats["sent"] += 1
                elif outcome == ScheduledRobocallStatus.FAILED:
                    stats["failed"] += 1
    except Exception as e:
        logger.error(f"Scheduled robocall run failed: {e}", exc_info=True)
        stats["error"] = str(e)
        return stats

    if stats["due"]:
        logger.info(
            f"Scheduled robocalls: {stats['sent']} sent, {stats['failed']} failed "
            f"of {stats['due']} due"
        )

    return stats


def register_telephony_jobs(scheduler: JobScheduler) -> None:
    """
    Register telephony background jobs with the scheduler.

    Call during application startup, before the scheduler is started.
    """
    interval = settings.webhook_token_sweep_interval_minutes

    scheduler.register_job(
        job_id=JOB_ID_SWEEP_WEBHOOK_TOKENS,
        func=sweep_webhook_tokens,
        trigger=IntervalTrigger(minutes=interval),
    )
    logger.info(f"Registered job: {JOB_ID_SWEEP_WEBHOOK_TOKENS} (interval: {interval} min)")

    scheduler.register_job(
        job_id=JOB_ID_EXPIRE_SESSIONS,
        func=expire_call_to_record_sessions,
        trigger=IntervalTrigger(minutes=interval),
    )
    logger.info(f"Registered job: {JOB_ID_EXPIRE_SESSIONS} (interval: {interval} min)")

    poll_interval = settings.scheduled_robocall_poll_interval_minutes
    scheduler.register_job(
        job_id=JOB_ID_SEND_SCHEDULED_ROBOCALLS,
        func=send_scheduled_robocalls,
        trigger=IntervalTrigger(minutes=poll_interval),
    )
    logger.info(
        f"Registered job: {JOB_ID_SEND_SCHEDULED_ROBOCALLS} (interval: {poll_interval} min)"
    )
