"""Job status records kept in the options table.

Each record: {status: running|completed|error, started_at,
completed_at|error_at, stats|error, message}.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from carbon_marketplace.database import Database

logger = logging.getLogger(__name__)

NEVER_RUN = {"status": "never_run", "message": "Never executed"}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatusRecorder:
    """Writes job status to the database, mirrored in memory when it is down."""

    def __init__(self, database: Database | None, prefix: str, label: str):
        self.database = database
        self.prefix = prefix
        self.label = label
        self._memory: dict[str, dict[str, Any]] = {}

    def _option(self, job: str) -> str:
        return f"{self.prefix}_{job}_status"

    async def _write(self, job: str, record: dict[str, Any]):
        self._memory[job] = record
        if self.database is None:
            return
        try:
            await self.database.set_option(self._option(job), record)
        except Exception as e:
            logger.warning("Status write failed | job=%s | %s", job, str(e)[:200])

    async def get(self, job: str) -> dict[str, Any]:
        if self.database is not None:
            try:
                record = await self.database.get_option(self._option(job))
                if record:
                    return record
            except Exception as e:
                logger.warning("Status read failed | job=%s | %s", job, str(e)[:200])
        return self._memory.get(job, dict(NEVER_RUN))

    async def start(self, job: str):
        await self._write(job, {
            "status": "running",
            "started_at": _timestamp(),
            "message": f"Starting {job} {self.label}",
        })

    async def complete(self, job: str, stats: dict[str, Any]):
        started = self._memory.get(job, {}).get("started_at", _timestamp())
        await self._write(job, {
            "status": "completed",
            "started_at": started,
            "completed_at": _timestamp(),
            "stats": stats,
            "message": f"Completed {job} {self.label}",
        })

    async def error(self, job: str, error: str):
        started = self._memory.get(job, {}).get("started_at", _timestamp())
        logger.error("%s error | job=%s | %s", self.label.capitalize(), job, error[:200])
        await self._write(job, {
            "status": "error",
            "started_at": started,
            "error_at": _timestamp(),
            "error": error,
            "message": f"Error in {job} {self.label}: {error}",
        })
