"""Background scheduler for periodic sync and maintenance jobs.

Jobs register with a cadence label; a single asyncio task wakes every
`poll_seconds`, runs whatever is due, and keeps going when a job fails.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from carbon_marketplace.config import settings

logger = logging.getLogger(__name__)

# Cadence label → timedelta
CADENCES = {
    "every_15min": timedelta(minutes=15),
    "every_30min": timedelta(minutes=30),
    "hourly": timedelta(hours=1),
    "every_2h": timedelta(hours=2),
    "every_6h": timedelta(hours=6),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

JobFunc = Callable[[], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScheduledJob:
    name: str
    cadence: str
    func: JobFunc
    next_run: datetime
    last_run: datetime | None = None
    last_status: str = "never_run"
    last_error: str = ""
    running: bool = False

    @property
    def interval(self) -> timedelta:
        return CADENCES[self.cadence]


class Scheduler:
    def __init__(self, poll_seconds: int | None = None):
        self.poll_seconds = poll_seconds or settings.scheduler_poll_seconds
        self._jobs: dict[str, ScheduledJob] = {}
        self._task: asyncio.Task | None = None

    def add_job(self, name: str, cadence: str, func: JobFunc, run_immediately: bool = False):
        if cadence not in CADENCES:
            raise ValueError(f"Unknown cadence: {cadence}")
        first_run = _now() if run_immediately else _now() + CADENCES[cadence]
        self._jobs[name] = ScheduledJob(name, cadence, func, first_run)

    def remove_job(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def has_job(self, name: str) -> bool:
        return name in self._jobs

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ═══════════════ EXECUTION ═══════════════

    async def _run_job(self, job: ScheduledJob) -> bool:
        if job.running:
            logger.info("Job already running | job=%s", job.name)
            return False
        job.running = True
        started = _now()
        try:
            await job.func()
            job.last_status = "completed"
            job.last_error = ""
            return True
        except Exception as exc:
            job.last_status = "error"
            job.last_error = str(exc)[:200]
            logger.exception("Scheduled job failed | job=%s", job.name)
            return False
        finally:
            job.running = False
            job.last_run = started
            job.next_run = started + job.interval

    async def run_pending(self, now: datetime | None = None) -> int:
        """Run every job whose next_run has passed. Returns how many ran."""
        now = now or _now()
        due = [job for job in self._jobs.values() if job.next_run <= now]
        for job in due:
            await self._run_job(job)
        return len(due)

    async def trigger(self, name: str) -> bool:
        job = self._jobs.get(name)
        if job is None:
            return False
        return await self._run_job(job)

    async def _loop(self):
        logger.info("Scheduler started (poll_interval=%ds, jobs=%d)", self.poll_seconds, len(self._jobs))
        while True:
            try:
                await asyncio.sleep(self.poll_seconds)
                count = await self.run_pending()
                if count:
                    logger.info("Scheduler ran %d jobs", count)
            except asyncio.CancelledError:
                logger.info("Scheduler stopped")
                break
            except Exception as exc:
                logger.exception("Scheduler error: %s", exc)

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # ═══════════════ STATUS ═══════════════

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {
            job.name: {
                "cadence": job.cadence,
                "next_run": job.next_run.isoformat(),
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "last_status": job.last_status,
                "last_error": job.last_error,
                "running": job.running,
            }
            for job in self._jobs.values()
        }

    def get_next_run_times(self) -> dict[str, str]:
        return {job.name: job.next_run.isoformat() for job in self._jobs.values()}
