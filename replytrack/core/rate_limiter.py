"""Fixed-window counters in Redis, used to slow down API token guessing and webhook floods."""

import logging
import time

from fastapi import HTTPException

from replytrack.core.config import Constants
from replytrack.core.redis_client import redis_client


logger = logging.getLogger(__name__)

AUTH_FAILURE_WINDOW_SECONDS = 60


def window_key(scope: str, identifier: str, window_seconds: int, now: float) -> str:
    """Counter key for the window containing `now`: ratelimit:<scope>:<identifier>:<window index>."""
    return f"ratelimit:{scope}:{identifier}:{int(now) // window_seconds}"


class RateLimiter:
    """Counts hits per (scope, identifier) and window. Without Redis nothing is limited."""

    async def check_rate_limit(
        self,
        scope: str,
        identifier: str,
        limit: int,
        window_seconds: int,
    ) -> None:
        """Record one hit.

        Raises:
            HTTPException: 429 with Retry-After once more than `limit` hits land in the current window
        """
        if not redis_client.is_available:
            return

        now = time.time()
        key = window_key(scope, identifier, window_seconds, now)
        try:
            count = await redis_client.increment(key)
            if count == 1:
                await redis_client.expire(key, window_seconds)
        except OSError:
            logger.exception("rate_limit_check_error", extra={"scope": scope})
            return

        if count is None or count <= limit:
            return

        retry_after = window_seconds - int(now) % window_seconds
        logger.warning(
            "rate_limit_exceeded",
            extra={"scope": scope, "identifier": identifier, "count": count, "limit": limit},
        )
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after), "X-RateLimit-Limit": str(limit)},
        )

    async def check_auth_failure_limit(self, client_id: str) -> None:
        """Count a rejected API token from `client_id`."""
        await self.check_rate_limit(
            scope="auth_failure",
            identifier=client_id,
            limit=Constants.MAX_AUTH_FAILURES_PER_MINUTE,
            window_seconds=AUTH_FAILURE_WINDOW_SECONDS,
        )

    async def check_webhook_rate_limit(self) -> None:
        """Global cap on inbound webhook calls."""
        await self.check_rate_limit(
            scope="webhook",
            identifier="global",
            limit=Constants.MAX_WEBHOOK_REQUESTS_PER_MINUTE,
            window_seconds=60,
        )


rate_limiter = RateLimiter()
