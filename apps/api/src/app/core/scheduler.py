"""
Background Job Scheduler

Scheduled task execution using APScheduler with AsyncIO support.

The scheduler is an owned object rather than module state: the application
lifespan creates one ``JobScheduler``, registers jobs on it, starts it on
startup and stops it on shutdown. Tests build their own instance.

Design Principles:
- Jobs are idempotent (safe to run multiple times, and concurrently from
  several API instances)
- Jobs open their own database sessions
- Failed jobs are logged but don't crash the scheduler
- Jobs can be triggered manually for testing

Usage:
    scheduler = JobScheduler()
    scheduler.register_job("my_job", my_job, IntervalTrigger(minutes=5))
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import logging
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Coroutine[Any, Any, Any]]


class SchedulerConfig:
    """Configuration for the background scheduler."""

    TIMEZONE = "UTC"

    JOB_COALESCE = True  # Combine multiple missed executions into one
    JOB_MAX_INSTANCES = 1  # Only one instance of each job per process
    JOB_MISFIRE_GRACE_TIME = 60  # Sweeps run often; stale runs are skipped

    EXECUTORS = {
        "default": {"type": "asyncio"},
    }

    JOB_DEFAULTS = {
        "coalesce": JOB_COALESCE,
        "max_instances": JOB_MAX_INSTANCES,
        "misfire_grace_time": JOB_MISFIRE_GRACE_TIME,
    }


def _job_listener(event: JobExecutionEvent) -> None:
    """Log job execution results for monitoring and debugging."""
    if event.exception:
        logger.error(
            f"Job {event.job_id} failed with exception: {event.exception}",
            exc_info=event.exception,
        )
    else:
        logger.debug(f"Job {event.job_id} executed at {datetime.now(UTC).isoformat()}")


class JobScheduler:
    """
    Owns an AsyncIOScheduler and the registry of jobs it runs.

    Jobs registered before ``start()`` are added when the scheduler starts;
    jobs registered afterwards are added immediately.
    """

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: dict[str, tuple[JobFunc, BaseTrigger]] = {}

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def register_job(
        self,
        job_id: str,
        func: JobFunc,
        trigger: BaseTrigger,
    ) -> None:
        """
        Register a job.

        Args:
            job_id: Unique identifier for the job
            func: Async function to execute
            trigger: APScheduler trigger (IntervalTrigger, CronTrigger, etc.)
        """
        self._jobs[job_id] = (func, trigger)

        if self._scheduler is not None:
            self._scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)
            logger.info(f"Registered job: {job_id}")

    async def start(self) -> None:
        """Create the underlying scheduler, add registered jobs and start it."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Initializing background job scheduler...")

        self._scheduler = AsyncIOScheduler(
            timezone=SchedulerConfig.TIMEZONE,
            executors=SchedulerConfig.EXECUTORS,
            job_defaults=SchedulerConfig.JOB_DEFAULTS,
        )
        self._scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        for job_id, (func, trigger) in self._jobs.items():
            self._scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)
            logger.info(f"Registered job: {job_id}")

        self._scheduler.start()
        logger.info("Background job scheduler started successfully")

    async def stop(self) -> None:
        """Stop the scheduler, waiting for running jobs to complete."""
        if not self.running:
            logger.debug("Scheduler not running, nothing to stop")
            return

        logger.info("Stopping background job scheduler...")
        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Background job scheduler stopped")

    async def trigger(self, job_id: str) -> dict[str, Any]:
        """
        Run a job immediately, bypassing its schedule.

        Returns:
            Dict with job_id, status ("success" or "error"), executed_at,
            the job's return value as "result", and "error" when it failed

        Raises:
            ValueError: If job_id is not registered
        """
        if job_id not in self._jobs:
            raise ValueError(
                f"Job {job_id} not found in registry. Available jobs: {list(self._jobs)}"
            )

        func, _ = self._jobs[job_id]
        executed_at = datetime.now(UTC)
        logger.info(f"Manually triggering job: {job_id}")

        try:
            result = await func()
        except Exception as e:
            logger.error(f"Manual execution of job {job_id} failed: {e}", exc_info=True)
            return {
                "job_id": job_id,
                "status": "error",
                "executed_at": executed_at.isoformat(),
                "error": str(e),
            }

        return {
            "job_id": job_id,
            "status": "success",
            "executed_at": executed_at.isoformat(),
            "result": result,
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        """List registered jobs with their next run time and pause status."""
        jobs = []

        for job_id in self._jobs:
            job_info: dict[str, Any] = {"job_id": job_id, "registered": True}

            scheduled = self._scheduler.get_job(job_id) if self._scheduler else None
            if scheduled is not None:
                job_info["next_run_time"] = (
                    scheduled.next_run_time.isoformat() if scheduled.next_run_time else None
                )
                job_info["is_paused"] = scheduled.next_run_time is None
            else:
                job_info["next_run_time"] = None
                job_info["is_paused"] = True

            jobs.append(job_info)

        return jobs

    def pause(self, job_id: str) -> bool:
        """Pause a scheduled job. Returns False if it isn't scheduled."""
        if self._scheduler is None or self._scheduler.get_job(job_id) is None:
            logger.warning(f"Job not found for pausing: {job_id}")
            return False

        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")
        return True

    def resume(self, job_id: str) -> bool:
        """Resume a paused job. Returns False if it isn't scheduled."""
        if self._scheduler is None or self._scheduler.get_job(job_id) is None:
            logger.warning(f"Job not found for resuming: {job_id}")
            return False

        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")
        return True
