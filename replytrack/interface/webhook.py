"""WAHA webhook endpoint feeding inbound messages to the correlation engine."""

import logging

from fastapi import APIRouter, Header, HTTPException, Request

from replytrack.core.config import settings
from replytrack.core.rate_limiter import rate_limiter
from replytrack.interface import webhook_security
from replytrack.interface.message_parser import resolve_sender_jid, waha_event_to_messages


router = APIRouter(prefix="/webhook", tags=["webhook"])
logger = logging.getLogger(__name__)


@router.post("")
async def receive_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(default=None),
) -> dict[str, str]:
    """Receive WAHA webhook POST requests.

    Message events pass the security checks (secret, timestamp, nonce, sender
    rate), are converted to a messages-upsert batch and queued on the inbound
    dispatcher; the response is returned before correlation runs. Everything
    else (session status, acks, QR codes) is ignored.

    Raises:
        HTTPException: If the payload is not valid JSON, a security check fails,
            or the global webhook rate limit is exceeded
    """
    await rate_limiter.check_webhook_rate_limit()

    try:
        payload = await request.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    messages = waha_event_to_messages(payload) if isinstance(payload, dict) else []
    if not messages:
        return {"status": "ignored"}

    event_payload = payload.get("payload")
    timestamp = event_payload.get("timestamp") if isinstance(event_payload, dict) else None
    first = messages[0]
    security_result = await webhook_security.verify_webhook_security(
        message_id=str(first["key"].get("id") or ""),
        timestamp=str(timestamp or ""),
        sender=resolve_sender_jid(first) or "",
        received_secret=x_webhook_secret,
        expected_secret=settings.webhook_secret,
    )

    if not security_result.is_valid:
        # Answer duplicates with 200 so WAHA does not retry them
        if security_result.error_message == webhook_security.DUPLICATE_WEBHOOK:
            return {"status": "duplicate"}

        logger.warning(
            "Webhook security check failed: %s",
            security_result.error_message,
            extra={"event": payload.get("event"), "message_id": first["key"].get("id")},
        )
        raise HTTPException(
            status_code=security_result.http_status_code or 400,
            detail=security_result.error_message,
        )

    request.app.state.dispatcher.enqueue({"type": "notify", "messages": messages})
    logger.debug("Queued inbound messages", extra={"count": len(messages), "event": payload.get("event")})
    return {"status": "received"}
