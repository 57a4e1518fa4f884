"""Checks run on every WAHA webhook call before its messages reach the engine."""

import logging
import secrets
import time
from typing import NamedTuple

from replytrack.core.config import Constants
from replytrack.core.rate_limiter import window_key
from replytrack.core.redis_client import redis_client


logger = logging.getLogger(__name__)

DUPLICATE_WEBHOOK = "Duplicate webhook"


class WebhookCheck(NamedTuple):
    """Outcome of one webhook check; `http_status_code` is set only when it failed."""

    is_valid: bool
    error_message: str | None = None
    http_status_code: int | None = None


PASSED = WebhookCheck(is_valid=True)


def check_secret(received: str | None, expected: str | None) -> WebhookCheck:
    """Compare the X-Webhook-Secret header with WEBHOOK_SECRET. Open when no secret is configured."""
    if not expected:
        return PASSED
    if not received:
        logger.warning("Missing webhook secret")
        return WebhookCheck(False, "Missing webhook secret", 401)
    if not secrets.compare_digest(received, expected):
        logger.warning("Invalid webhook secret")
        return WebhookCheck(False, "Invalid webhook secret", 403)
    return PASSED


def check_timestamp(timestamp: str, now: float | None = None) -> WebhookCheck:
    """Reject events without a unix timestamp, from the future, or older than WEBHOOK_MAX_AGE_SECONDS."""
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        logger.warning("Invalid webhook timestamp: %s", timestamp)
        return WebhookCheck(False, "Invalid timestamp format", 400)

    age_seconds = int(time.time() if now is None else now) - sent_at
    if age_seconds < 0:
        logger.warning("Webhook timestamp in future: %s", timestamp)
        return WebhookCheck(False, "Timestamp is in the future", 400)
    if age_seconds > Constants.WEBHOOK_MAX_AGE_SECONDS:
        logger.warning(
            "Webhook expired (age: %ds)",
            age_seconds,
            extra={"webhook_age_seconds": age_seconds, "max_age_seconds": Constants.WEBHOOK_MAX_AGE_SECONDS},
        )
        return WebhookCheck(False, f"Webhook expired (age: {age_seconds}s)", 400)
    return PASSED


async def check_nonce(message_id: str) -> WebhookCheck:
    """Accept each message id once per WEBHOOK_NONCE_TTL_SECONDS.

    WAHA posts an incoming message as both `message` and `message.any`; the
    second delivery fails here. Skipped when Redis is off.
    """
    if not message_id:
        return WebhookCheck(False, "Missing message id", 400)

    first_seen = await redis_client.set_if_not_exists(
        f"webhook:nonce:{message_id}", "1", ttl_seconds=Constants.WEBHOOK_NONCE_TTL_SECONDS
    )
    if first_seen is False:
        logger.debug("Duplicate webhook detected", extra={"message_id": message_id})
        return WebhookCheck(False, DUPLICATE_WEBHOOK, 200)
    return PASSED


async def check_sender_rate(sender: str) -> WebhookCheck:
    """Per-sender cap of WEBHOOK_RATE_LIMIT_PER_SENDER events a minute. Open without Redis."""
    if not redis_client.is_available or not sender:
        return PASSED

    key = window_key("webhook_sender", sender, 60, time.time())
    count = await redis_client.increment(key)
    if count is None:
        return PASSED
    if count == 1:
        await redis_client.expire(key, 60)

    if count > Constants.WEBHOOK_RATE_LIMIT_PER_SENDER:
        logger.warning(
            "Webhook rate limit exceeded",
            extra={"sender": sender, "request_count": count, "limit": Constants.WEBHOOK_RATE_LIMIT_PER_SENDER},
        )
        return WebhookCheck(False, f"Rate limit exceeded: {count} requests per minute", 429)
    return PASSED


async def verify_webhook_security(
    message_id: str,
    timestamp: str,
    sender: str,
    received_secret: str | None = None,
    expected_secret: str | None = None,
) -> WebhookCheck:
    """Run the checks in order (secret, timestamp, nonce, sender rate) and return the first failure."""
    result = check_secret(received_secret, expected_secret)
    if not result.is_valid:
        return result

    result = check_timestamp(timestamp)
    if not result.is_valid:
        return result

    result = await check_nonce(message_id)
    if not result.is_valid:
        return result

    return await check_sender_rate(sender)
