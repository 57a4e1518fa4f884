"""Outbound send path: normalize an API payload into transport content and send it."""

import logging
import re
from typing import Any

from replytrack.core.errors import ErrorCode, SendError
from replytrack.core.jid import normalize_jid
from replytrack.interface.transport import MessagingTransport


logger = logging.getLogger(__name__)

# Keys of a send payload that describe the request rather than the message
RESERVED_KEYS = frozenset({"to", "type", "options", "message", "context", "awaitResponse"})
MEDIA_TYPES = frozenset({"image", "video", "audio", "document", "sticker"})
MENTION_REGEX = re.compile(r"@\{(\d+)\}")
MENTION_FIELDS = ("text", "caption", "footer", "title")


def parse_mentions(text: str) -> tuple[str, list[str]]:
    """Replace `@{number}` markers with `@number` and collect the mentioned JIDs."""
    mentions: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        mentions.append(normalize_jid(match.group(1)))
        return f"@{match.group(1)}"

    return MENTION_REGEX.sub(_replace, text), mentions


def _require_socket(transport: MessagingTransport) -> None:
    if transport.get_socket() is None:
        raise SendError(ErrorCode.SOCKET_NOT_AVAILABLE)


async def send_text(transport: MessagingTransport, to: object, text: object, options: dict | None = None) -> dict[str, Any]:
    if not to or not isinstance(text, str):
        raise SendError(ErrorCode.TO_AND_TEXT_REQUIRED)
    _require_socket(transport)

    jid = normalize_jid(to)
    parsed_text, mentions = parse_mentions(text)
    content: dict[str, Any] = {"text": parsed_text}
    if mentions:
        content["mentions"] = mentions

    result = await transport.send(jid, content, options or {})
    return {"to": jid, "messageId": result.message_id, "type": "text", "mentions": mentions, "status": "sent"}


async def send_interactive(
    transport: MessagingTransport,
    to: object,
    content: object,
    options: dict | None = None,
) -> dict[str, Any]:
    if not to:
        raise SendError(ErrorCode.TO_REQUIRED)
    if not isinstance(content, dict):
        raise SendError(ErrorCode.CONTENT_OBJECT_REQUIRED)
    _require_socket(transport)

    jid = normalize_jid(to)
    safe_content = dict(content)
    collected: list[str] = []
    for field in MENTION_FIELDS:
        if isinstance(safe_content.get(field), str):
            safe_content[field], mentions = parse_mentions(safe_content[field])
            collected.extend(mentions)
    if collected:
        safe_content["mentions"] = list(dict.fromkeys([*safe_content.get("mentions", []), *collected]))

    result = await transport.send(jid, safe_content, options or {})
    return {
        "to": jid,
        "messageId": result.message_id,
        "type": "interactive",
        "contentType": next(iter(safe_content), "unknown"),
        "status": "sent",
    }


async def send_media(transport: MessagingTransport, payload: dict[str, Any]) -> dict[str, Any]:
    to = payload.get("to")
    media_type = str(payload.get("mediaType") or "").lower()
    media = payload.get("media")
    if not to or not media_type or not media:
        raise SendError(ErrorCode.INVALID_PAYLOAD, "TO_MEDIA_TYPE_AND_MEDIA_REQUIRED")
    if media_type not in MEDIA_TYPES:
        raise SendError(ErrorCode.UNSUPPORTED_CONTENT, "UNSUPPORTED_MEDIA_TYPE")
    _require_socket(transport)

    jid = normalize_jid(to)
    extra = {
        key: value
        for key, value in payload.items()
        if key not in RESERVED_KEYS and key not in ("mediaType", "media", "caption", "text")
    }
    content: dict[str, Any] = {media_type: media, **extra}

    caption = payload.get("caption") if isinstance(payload.get("caption"), str) else payload.get("text")
    if isinstance(caption, str) and caption:
        content["caption"], mentions = parse_mentions(caption)
        if mentions:
            content["mentions"] = mentions

    result = await transport.send(jid, content, payload.get("options") or {})
    return {"to": jid, "messageId": result.message_id, "type": "media", "mediaType": media_type, "status": "sent"}


async def send_any(transport: MessagingTransport, payload: object) -> dict[str, Any]:
    """Send a loosely shaped payload, dispatching on `type` or inferring it.

    Without a `type`: media fields mean media, a lone `text` means text, a
    `content` object or any other non-reserved keys mean interactive content.

    Raises:
        SendError: for invalid payloads or an unavailable transport
        TaskValidationError: for an invalid destination
    """
    if not isinstance(payload, dict):
        raise SendError(ErrorCode.INVALID_PAYLOAD)

    message_type = str(payload.get("type") or "").lower()
    options = payload.get("options") or {}
    to = payload.get("to")

    match message_type:
        case "text":
            return await send_text(transport, to, payload.get("text"), options)
        case "interactive":
            return await send_interactive(transport, to, payload.get("content"), options)
        case "media":
            return await send_media(transport, payload)
        case "":
            pass
        case _:
            raise SendError(ErrorCode.UNSUPPORTED_MESSAGE_TYPE)

    if payload.get("mediaType") and payload.get("media"):
        return await send_media(transport, payload)

    content = {key: value for key, value in payload.items() if key not in RESERVED_KEYS}
    if list(content) == ["text"] and isinstance(content["text"], str):
        return await send_text(transport, to, content["text"], options)

    if isinstance(payload.get("content"), dict):
        return await send_interactive(transport, to, payload["content"], options)

    if content:
        return await send_interactive(transport, to, content, options)

    raise SendError(ErrorCode.INVALID_PAYLOAD_SHAPE)
