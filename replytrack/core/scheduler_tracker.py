"""Run history and health of scheduled jobs, reported by /health/scheduler."""

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from replytrack.core.config import Constants
from replytrack.core.redis_client import redis_client


logger = logging.getLogger(__name__)

_STATS_TTL_SECONDS = 7 * 86400
_RUN_MARKER_TTL_SECONDS = 3600
_DLQ_TTL_SECONDS = 30 * 86400
_DEAD_LETTER_AFTER_FAILURES = 3
_MAX_ERROR_LENGTH = 500

_TEXT_FIELDS = ("last_success", "last_failure", "last_error")
_COUNTERS = ("consecutive_failures", "success_count", "failure_count")


class JobTracker:
    """Per-job counters and timestamps.

    Fields are kept under `scheduler:job:<name>:<field>` in Redis when it is
    available, so they survive restarts; otherwise in a dict for this process.
    """

    def __init__(self) -> None:
        self._local: dict[str, dict[str, Any]] = {}
        self._dead_letters: deque[dict[str, str]] = deque(maxlen=Constants.TRACKER_DEAD_LETTER_QUEUE_MAXLEN)

    @staticmethod
    def _key(job_name: str, field: str) -> str:
        return f"scheduler:job:{job_name}:{field}"

    async def _put(self, job_name: str, field: str, value: str, ttl_seconds: int = _STATS_TTL_SECONDS) -> None:
        if redis_client.is_available:
            await redis_client.set(self._key(job_name, field), value, ttl_seconds=ttl_seconds)
        else:
            self._local.setdefault(job_name, {})[field] = value

    async def _bump(self, job_name: str, field: str) -> int:
        if redis_client.is_available:
            key = self._key(job_name, field)
            value = await redis_client.increment(key)
            await redis_client.expire(key, _STATS_TTL_SECONDS)
            return value or 0
        data = self._local.setdefault(job_name, {})
        data[field] = int(data.get(field, 0)) + 1
        return data[field]

    async def _drop(self, job_name: str, field: str) -> None:
        if redis_client.is_available:
            await redis_client.delete(self._key(job_name, field))
        else:
            self._local.get(job_name, {}).pop(field, None)

    async def _read(self, job_name: str, field: str) -> str | None:
        if redis_client.is_available:
            return await redis_client.get(self._key(job_name, field))
        value = self._local.get(job_name, {}).get(field)
        return None if value is None else str(value)

    async def record_job_start(self, job_name: str) -> None:
        await self._put(job_name, "current_run", datetime.now(UTC).isoformat(), _RUN_MARKER_TTL_SECONDS)

    async def record_job_success(self, job_name: str) -> None:
        await self._put(job_name, "last_success", datetime.now(UTC).isoformat())
        await self._put(job_name, "consecutive_failures", "0")
        await self._bump(job_name, "success_count")
        await self._drop(job_name, "current_run")

    async def record_job_failure(self, job_name: str, error: str) -> int:
        """Record a failed run.

        Returns:
            Consecutive failures so far, this one included
        """
        await self._put(job_name, "last_failure", datetime.now(UTC).isoformat())
        await self._put(job_name, "last_error", error[:_MAX_ERROR_LENGTH])
        consecutive = await self._bump(job_name, "consecutive_failures")
        await self._bump(job_name, "failure_count")
        await self._drop(job_name, "current_run")
        return consecutive

    async def get_job_status(self, job_name: str) -> dict[str, Any]:
        status: dict[str, Any] = {"job_name": job_name}
        for field in _TEXT_FIELDS:
            status[field] = await self._read(job_name, field)
        for field in _COUNTERS:
            status[field] = int(await self._read(job_name, field) or 0)
        current_run = await self._read(job_name, "current_run")
        status["currently_running"] = current_run is not None
        status["current_run_started"] = current_run
        return status

    async def add_to_dead_letter_queue(self, job_name: str, error: str, context: str) -> None:
        """Park a job that keeps failing so it shows up as critical in the health check."""
        timestamp = datetime.now(UTC).isoformat()
        self._dead_letters.append({"job_name": job_name, "error": error, "context": context})
        logger.error(
            "Job added to dead letter queue",
            extra={"job_name": job_name, "error": error, "context": context, "timestamp": timestamp},
        )
        if redis_client.is_available:
            await redis_client.set(f"scheduler:dlq:{job_name}:{timestamp}", f"{error} | {context}", _DLQ_TTL_SECONDS)

    def get_dead_letter_queue(self) -> list[dict[str, str]]:
        return list(self._dead_letters)


job_tracker = JobTracker()


async def run_tracked_job(job_func: Callable[[], Awaitable[None]], job_name: str) -> None:
    """Run a job once and record the outcome.

    Exceptions are logged and counted, never raised, so the scheduler keeps
    its interval. The third failure in a row adds a dead letter entry.
    """
    await job_tracker.record_job_start(job_name)
    try:
        await job_func()
    except Exception as e:
        error = str(e) or type(e).__name__
        consecutive = await job_tracker.record_job_failure(job_name, error)
        logger.exception("%s failed", job_name, extra={"error": error, "consecutive_failures": consecutive})
        if consecutive == _DEAD_LETTER_AFTER_FAILURES:
            await job_tracker.add_to_dead_letter_queue(
                job_name, error, f"Failed {consecutive} consecutive times"
            )
        return

    await job_tracker.record_job_success(job_name)
