"""
Named repeating and one-shot jobs on an APScheduler AsyncIOScheduler.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[Any]]]


class TaskScheduler:
    """Owns every timer of a service so shutdown is a single call.

    Jobs are keyed by name; scheduling a name that already exists
    replaces the previous job. Removing a job never interrupts a run
    that has already started. Callbacks always run on the event loop
    thread, sync ones included.
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running: set[asyncio.Task] = set()

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """The underlying scheduler, started on the running loop on first use."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                event_loop=asyncio.get_running_loop(), timezone=self.timezone
            )
            self._scheduler.start()
        return self._scheduler

    def every(
        self,
        name: str,
        interval: float,
        callback: Callback,
        run_immediately: bool = True,
    ) -> None:
        """
        Run callback every interval seconds until cancelled.

        Args:
            name: Job id
            interval: Seconds between runs
            callback: Sync or async callable
            run_immediately: Run once right away before the first wait
        """
        scheduler = self.scheduler
        # An explicit next_run_time=None would add the job paused
        options = {}
        if run_immediately:
            options["next_run_time"] = self._now()
        scheduler.add_job(
            self._invoke,
            trigger=IntervalTrigger(seconds=interval, timezone=scheduler.timezone),
            args=[name, callback],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            **options,
        )

    def call_later(self, name: str, delay: float, callback: Callback) -> None:
        """Run callback once after delay seconds."""
        scheduler = self.scheduler
        scheduler.add_job(
            self._invoke,
            trigger=DateTrigger(
                run_date=self._now() + timedelta(seconds=max(delay, 0.0)),
                timezone=scheduler.timezone,
            ),
            args=[name, callback],
            id=name,
            name=name,
            replace_existing=True,
            misfire_grace_time=None,
        )

    def has(self, name: str) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(name) is not None

    def pending(self) -> list[str]:
        """Names of every scheduled job."""
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    def cancel(self, name: str) -> bool:
        """Remove a job by name. Returns False if nothing was scheduled."""
        if self._scheduler is None:
            return False
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return False
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Remove every job whose name starts with prefix."""
        names = [n for n in self.pending() if n.startswith(prefix)]
        for name in names:
            self.cancel(name)
        return len(names)

    def cancel_all(self) -> None:
        """Remove every job and shut the scheduler down."""
        if self._scheduler is None:
            return
        scheduler, self._scheduler = self._scheduler, None
        scheduler.remove_all_jobs()
        if scheduler.running:
            scheduler.shutdown(wait=False)

    async def shutdown(self) -> None:
        """Remove every job, wait for runs already in progress, then stop."""
        if self._scheduler is None:
            return
        self._scheduler.remove_all_jobs()

        # Stopping the scheduler cancels its in-flight runs, so let them finish first
        current = asyncio.current_task()
        running = [task for task in self._running if task is not current]
        if running:
            logger.debug(f"Waiting for {len(running)} scheduled runs to finish")
            await asyncio.gather(*running, return_exceptions=True)
        self.cancel_all()

    def _now(self) -> datetime:
        return datetime.now(self.scheduler.timezone)

    async def _invoke(self, name: str, callback: Callback) -> None:
        task = asyncio.current_task()
        self._running.add(task)
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Scheduled task {name} failed")
        finally:
            self._running.discard(task)
