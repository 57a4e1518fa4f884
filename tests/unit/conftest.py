"""Pytest configuration and fixtures for unit tests."""

from unittest.mock import AsyncMock, PropertyMock, patch

import pytest

from replytrack.services.correlation_service import ResponseTaskService
from replytrack.services.task_store import TaskStore
from tests.unit.mocks import FakeTransport


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def service(store: TaskStore, transport: FakeTransport) -> ResponseTaskService:
    """A started correlation service over a temporary store and a fake transport."""
    task_service = ResponseTaskService(
        store,
        transport,
        default_timeout_ms=20_000,
        retention_ms=60_000,
        timeout_retry_attempts=3,
        timeout_retry_delay_ms=0,
    )
    task_service.start()
    return task_service


@pytest.fixture
def redis_unavailable():
    """Force Redis-backed helpers onto their in-memory fallbacks."""
    with (
        patch("replytrack.core.scheduler_tracker.redis_client") as tracker_redis,
        patch("replytrack.core.rate_limiter.redis_client") as limiter_redis,
        patch("replytrack.interface.webhook_security.redis_client") as webhook_redis,
    ):
        for mock_redis in (tracker_redis, limiter_redis, webhook_redis):
            type(mock_redis).is_available = PropertyMock(return_value=False)
        webhook_redis.set_if_not_exists = AsyncMock(return_value=None)
        yield
