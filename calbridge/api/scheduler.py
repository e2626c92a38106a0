"""Scheduler for periodic calendar syncs.

One APScheduler interval job per calendar. Each job calls the sync
coordinator, whose per-calendar guard turns overlapping fires into
``already_in_progress`` results. Repeated fatal errors push a calendar's
next run out exponentially.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calbridge.core.errors import ConfigurationError
from calbridge.core.models import SyncResult, SyncStatus
from calbridge.core.sync import SyncCoordinator

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 15
DEFAULT_MAX_BACKOFF_MINUTES = 240


def job_id_for(calendar_id: str) -> str:
    return f"sync_{calendar_id}"


class SyncScheduler:
    """Manages scheduled sync operations using APScheduler.

    Features:
    - Schedules every enabled calendar on startup
    - Adds, replaces or cancels one calendar's job without touching the others
    - Backs off on repeated fatal errors, resets after a success
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        default_interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        max_backoff_minutes: int = DEFAULT_MAX_BACKOFF_MINUTES,
        scheduler: AsyncIOScheduler | None = None,
    ):
        """Initialize the scheduler.

        Args:
            coordinator: Shared sync coordinator (its guard is the only lock)
            default_interval_minutes: Interval for calendars without their own
            max_backoff_minutes: Upper bound on the delay after fatal errors
            scheduler: APScheduler instance, mainly for tests
        """
        self.coordinator = coordinator
        self.default_interval_minutes = default_interval_minutes
        self.max_backoff_minutes = max_backoff_minutes
        self.scheduler = scheduler or AsyncIOScheduler()
        self._intervals: dict[str, int] = {}
        self._failures: dict[str, int] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        """Return True if the scheduler is actively running."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler and add a job for every scheduled calendar."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        calendars = await self.coordinator.calendars_db.list_calendars(enabled_only=True)
        count = 0
        for calendar in calendars:
            if calendar.scheduled:
                self.schedule(calendar.calendar_id, calendar.interval_minutes)
                count += 1

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started with {count} calendar jobs")

    async def stop(self) -> None:
        """Stop the scheduler and cleanup."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def schedule(self, calendar_id: str, interval_minutes: int | None = None):
        """
        Add or replace the periodic job for a calendar.

        Args:
            calendar_id: Calendar to sync
            interval_minutes: Run interval (default from config)

        Returns:
            The APScheduler job
        """
        interval = interval_minutes or self.default_interval_minutes
        if interval <= 0:
            raise ValueError("interval_minutes must be positive")

        self._intervals[calendar_id] = interval
        self._failures.pop(calendar_id, None)
        job = self.scheduler.add_job(
            self._execute_sync,
            trigger=IntervalTrigger(minutes=interval),
            args=[calendar_id],
            id=job_id_for(calendar_id),
            name=f"Sync {calendar_id}",
            replace_existing=True,
            # Let overlapping fires reach the coordinator's guard
            max_instances=3,
            coalesce=True,
        )
        logger.info(f"Scheduled sync of {calendar_id} every {interval} minutes")
        return job

    def unschedule(self, calendar_id: str) -> bool:
        """Cancel a calendar's job. Returns False if none was scheduled."""
        self._intervals.pop(calendar_id, None)
        self._failures.pop(calendar_id, None)
        job_id = job_id_for(calendar_id)
        if self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.remove_job(job_id)
        logger.info(f"Unscheduled sync of {calendar_id}")
        return True

    def is_scheduled(self, calendar_id: str) -> bool:
        return self.scheduler.get_job(job_id_for(calendar_id)) is not None

    def interval_for(self, calendar_id: str) -> int:
        return self._intervals.get(calendar_id, self.default_interval_minutes)

    def failures(self, calendar_id: str) -> int:
        return self._failures.get(calendar_id, 0)

    def backoff_minutes(self, calendar_id: str) -> int:
        """Delay before the next run: interval * 2**failures, capped."""
        interval = self._intervals.get(calendar_id, self.default_interval_minutes)
        failures = self._failures.get(calendar_id, 0)
        return min(interval * (2 ** failures), self.max_backoff_minutes)

    def get_jobs(self) -> list[dict]:
        """Summaries of the scheduled calendar jobs."""
        jobs = []
        for calendar_id, interval in sorted(self._intervals.items()):
            job = self.scheduler.get_job(job_id_for(calendar_id))
            if job is None:
                continue
            jobs.append(
                {
                    "calendar_id": calendar_id,
                    "interval_minutes": interval,
                    "next_run": self.next_run_timestamp(job),
                    "failures": self._failures.get(calendar_id, 0),
                }
            )
        return jobs

    async def trigger(self, calendar_id: str) -> SyncResult:
        """Run a calendar's sync right now, outside its interval."""
        return await self._execute_sync(calendar_id)

    async def _execute_sync(self, calendar_id: str) -> SyncResult | None:
        """Job body: run the coordinator and track fatal failures."""
        try:
            result = await self.coordinator.run_sync(calendar_id, sync_type="scheduled")
        except ConfigurationError as exc:
            self._failures[calendar_id] = self._failures.get(calendar_id, 0) + 1
            delay = self.backoff_minutes(calendar_id)
            logger.error(
                "Scheduled sync of %s failed (%d in a row), next attempt in %d minutes: %s",
                calendar_id,
                self._failures[calendar_id],
                delay,
                exc,
            )
            self._postpone(calendar_id, delay)
            return None

        if result.status == SyncStatus.ALREADY_IN_PROGRESS:
            return result

        if self._failures.pop(calendar_id, None):
            logger.info(f"Sync of {calendar_id} recovered, backoff reset")
        return result

    def _postpone(self, calendar_id: str, delay_minutes: int) -> None:
        job = self.scheduler.get_job(job_id_for(calendar_id))
        if job is None:
            return
        next_run = datetime.now(self.scheduler.timezone) + timedelta(minutes=delay_minutes)
        job.modify(next_run_time=next_run)

    def next_run_timestamp(self, job) -> float | None:
        """Return the next run timestamp for a job, if known."""
        next_run_dt = getattr(job, "next_run_time", None)
        if next_run_dt:
            return next_run_dt.timestamp()
        return None
