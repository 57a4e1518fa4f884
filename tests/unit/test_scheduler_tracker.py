"""Tests for scheduler job tracking and the maintenance job wiring."""

from unittest.mock import AsyncMock, patch

import pytest

from replytrack.core import scheduler as scheduler_module
from replytrack.core.config import constants
from replytrack.core.scheduler_tracker import JobTracker, run_tracked_job


pytestmark = pytest.mark.usefixtures("redis_unavailable")


@pytest.fixture
def job_tracker() -> JobTracker:
    """Create a job tracker instance for testing with in-memory storage."""
    return JobTracker()


@pytest.mark.unit
async def test_record_job_start_in_memory(job_tracker: JobTracker) -> None:
    await job_tracker.record_job_start("test_job")

    status = await job_tracker.get_job_status("test_job")
    assert status["currently_running"] is True
    assert status["current_run_started"] is not None


@pytest.mark.unit
async def test_consecutive_failures_reset_on_success(job_tracker: JobTracker) -> None:
    await job_tracker.record_job_start("test_job")
    assert await job_tracker.record_job_failure("test_job", "Error 1") == 1
    await job_tracker.record_job_start("test_job")
    assert await job_tracker.record_job_failure("test_job", "Error 2") == 2

    await job_tracker.record_job_start("test_job")
    await job_tracker.record_job_success("test_job")

    status = await job_tracker.get_job_status("test_job")
    assert status["consecutive_failures"] == 0
    assert status["failure_count"] == 2
    assert status["success_count"] == 1
    assert status["last_error"] == "Error 2"
    assert status["currently_running"] is False


@pytest.mark.unit
async def test_long_errors_are_truncated(job_tracker: JobTracker) -> None:
    await job_tracker.record_job_failure("test_job", "x" * 1000)

    status = await job_tracker.get_job_status("test_job")
    assert len(status["last_error"]) == 500


@pytest.mark.unit
async def test_run_tracked_job_records_success() -> None:
    tracker = JobTracker()
    job = AsyncMock()

    with patch("replytrack.core.scheduler_tracker.job_tracker", tracker):
        await run_tracked_job(job, "maintenance")

    job.assert_awaited_once()
    assert (await tracker.get_job_status("maintenance"))["success_count"] == 1


@pytest.mark.unit
async def test_run_tracked_job_swallows_failures_and_fills_dead_letter_queue() -> None:
    tracker = JobTracker()
    job = AsyncMock(side_effect=RuntimeError("database locked"))

    with patch("replytrack.core.scheduler_tracker.job_tracker", tracker):
        for _ in range(4):
            await run_tracked_job(job, "maintenance")

    status = await tracker.get_job_status("maintenance")
    assert status["consecutive_failures"] == 4
    assert tracker.get_dead_letter_queue() == [
        {"job_name": "maintenance", "error": "database locked", "context": "Failed 3 consecutive times"}
    ]


@pytest.mark.unit
def test_start_scheduler_registers_single_instance_job() -> None:
    with patch.object(scheduler_module, "scheduler") as mock_scheduler:
        mock_scheduler.running = False
        scheduler_module.start_scheduler(AsyncMock())

    kwargs = mock_scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == constants.MAINTENANCE_JOB_NAME
    assert kwargs["max_instances"] == 1
    assert kwargs["coalesce"] is True
    assert kwargs["trigger"].interval.total_seconds() == constants.MAINTENANCE_INTERVAL_SECONDS
    mock_scheduler.start.assert_called_once()


@pytest.mark.unit
def test_stop_scheduler_is_noop_when_not_running() -> None:
    with patch.object(scheduler_module, "scheduler") as mock_scheduler:
        mock_scheduler.running = False
        scheduler_module.stop_scheduler()

    mock_scheduler.shutdown.assert_not_called()
