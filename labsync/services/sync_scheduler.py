"""Periodic calendar sync scheduler."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import pytz
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger()


class SyncScheduler:
    """
    Runs a sync pass immediately, then on a fixed interval until stopped.

    Must be started from inside a running event loop. A tick that arrives
    while the previous pass is still running is skipped.
    """

    def __init__(self, sync_func: Callable[[], Awaitable[Any]], job_id: str = "calendar_bidirectional_sync"):
        """
        Initialize scheduler.

        Args:
            sync_func: Coroutine function running one pass
            job_id: APScheduler job ID
        """
        self.sync_func = sync_func
        self.job_id = job_id
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.interval_minutes: Optional[float] = None
        self.run_count = 0
        self.skipped_ticks = 0
        self.last_result = None
        self._current_pass: Optional[asyncio.Task] = None

    @property
    def pass_in_progress(self) -> bool:
        return self._current_pass is not None and not self._current_pass.done()

    async def _execute_pass(self):
        """Task to run one sync pass."""
        logger.info("calendar_sync_scheduled_start", run_number=self.run_count + 1)

        try:
            self.last_result = await self.sync_func()
            self.run_count += 1
        except Exception as e:
            logger.error("calendar_sync_scheduled_error",
                        error=str(e),
                        exc_info=True)

    def trigger_pass(self) -> Optional[asyncio.Task]:
        """
        Start a pass in the background.

        Returns:
            The pass task, or None when the previous pass has not finished
        """
        if self.pass_in_progress:
            self.skipped_ticks += 1
            logger.warning("calendar_sync_tick_skipped",
                         reason="previous_pass_running",
                         skipped_ticks=self.skipped_ticks)
            return None

        self._current_pass = asyncio.ensure_future(self._execute_pass())
        return self._current_pass

    async def _tick(self):
        self.trigger_pass()

    def start(self, interval_minutes: float = 5):
        """Start scheduler."""
        if self.is_running:
            logger.warning("calendar_sync_scheduler_already_running")
            return

        self.is_running = True
        self.interval_minutes = interval_minutes

        # First pass right away, then every interval
        self.trigger_pass()

        self.scheduler = AsyncIOScheduler(timezone=pytz.UTC)
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=self.job_id,
            name="Calendar bidirectional sync",
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
        self.scheduler.start()

        logger.info("calendar_sync_scheduler_started", interval_minutes=interval_minutes)

    def stop(self):
        """Stop future ticks. A pass already running is left to finish."""
        if not self.is_running:
            return

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.is_running = False
        logger.info("calendar_sync_scheduler_stopped", total_runs=self.run_count)

    def get_status(self):
        """Get scheduler status."""
        status = {
            "running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "total_runs": self.run_count,
            "skipped_ticks": self.skipped_ticks,
            "pass_in_progress": self.pass_in_progress,
            "next_run": None,
        }

        if self.scheduler is not None:
            job = self.scheduler.get_job(self.job_id)
            if job and job.next_run_time:
                status["next_run"] = job.next_run_time.isoformat()

        return status
