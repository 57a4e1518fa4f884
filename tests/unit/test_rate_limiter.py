"""Tests for rate limiting functionality."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from replytrack.core.rate_limiter import RateLimiter, window_key


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter()


@pytest.mark.unit
def test_window_key() -> None:
    assert window_key("auth_failure", "10.0.0.1", 60, 125.5) == "ratelimit:auth_failure:10.0.0.1:2"


@pytest.mark.unit
async def test_first_hit_sets_window_expiry(rate_limiter: RateLimiter) -> None:
    with patch("replytrack.core.rate_limiter.redis_client") as mock_redis:
        mock_redis.is_available = True
        mock_redis.increment = AsyncMock(return_value=1)
        mock_redis.expire = AsyncMock(return_value=True)

        await rate_limiter.check_rate_limit(scope="test", identifier="client1", limit=10, window_seconds=60)

        key = mock_redis.increment.call_args[0][0]
        assert key.startswith("ratelimit:test:client1:")
        assert mock_redis.expire.call_args[0][1] == 60


@pytest.mark.unit
async def test_exceeding_limit_raises_429(rate_limiter: RateLimiter) -> None:
    with patch("replytrack.core.rate_limiter.redis_client") as mock_redis:
        mock_redis.is_available = True
        mock_redis.increment = AsyncMock(return_value=11)

        with pytest.raises(HTTPException) as exc_info:
            await rate_limiter.check_rate_limit(scope="test", identifier="client1", limit=10, window_seconds=60)

    assert exc_info.value.status_code == 429
    assert exc_info.value.headers is not None
    assert exc_info.value.headers["X-RateLimit-Limit"] == "10"
    assert 0 < int(exc_info.value.headers["Retry-After"]) <= 60


@pytest.mark.unit
@pytest.mark.parametrize(
    "increment",
    [AsyncMock(return_value=None), AsyncMock(side_effect=ConnectionError("Redis down"))],
)
async def test_fails_open(rate_limiter: RateLimiter, increment: AsyncMock) -> None:
    with patch("replytrack.core.rate_limiter.redis_client") as mock_redis:
        mock_redis.is_available = True
        mock_redis.increment = increment

        await rate_limiter.check_rate_limit(scope="test", identifier="client1", limit=10, window_seconds=60)


@pytest.mark.unit
async def test_skipped_without_redis(rate_limiter: RateLimiter) -> None:
    with patch("replytrack.core.rate_limiter.redis_client") as mock_redis:
        mock_redis.is_available = False
        mock_redis.increment = AsyncMock()

        await rate_limiter.check_rate_limit(scope="test", identifier="client1", limit=10, window_seconds=60)

    mock_redis.increment.assert_not_called()


@pytest.mark.unit
async def test_auth_failure_limit_scope(rate_limiter: RateLimiter) -> None:
    with patch.object(rate_limiter, "check_rate_limit", new_callable=AsyncMock) as mock_check:
        await rate_limiter.check_auth_failure_limit("10.0.0.1")

    kwargs = mock_check.call_args.kwargs
    assert kwargs["scope"] == "auth_failure"
    assert kwargs["identifier"] == "10.0.0.1"
    assert kwargs["window_seconds"] == 60


@pytest.mark.unit
async def test_webhook_limit_is_global(rate_limiter: RateLimiter) -> None:
    with patch.object(rate_limiter, "check_rate_limit", new_callable=AsyncMock) as mock_check:
        await rate_limiter.check_webhook_rate_limit()

    kwargs = mock_check.call_args.kwargs
    assert kwargs["scope"] == "webhook"
    assert kwargs["identifier"] == "global"
    assert kwargs["window_seconds"] == 60
