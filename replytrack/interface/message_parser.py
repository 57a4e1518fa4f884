"""Inbound WhatsApp message parsing.

Messages are handled in the Baileys `WAMessage` shape (`{key, message}`);
WAHA webhook events are converted into that shape first.
"""

import json
import logging
from typing import Any

from replytrack.core.jid import USER_SUFFIX, WAHA_USER_SUFFIX
from replytrack.domain.task import ParsedResponse


logger = logging.getLogger(__name__)

ENVELOPE_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)
REPLY_CONTEXT_KEYS = (
    "buttonsResponseMessage",
    "listResponseMessage",
    "templateButtonReplyMessage",
    "interactiveResponseMessage",
    "extendedTextMessage",
)
WAHA_MESSAGE_EVENTS = frozenset({"message", "message.any"})


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def unwrap_message_content(content: object) -> dict[str, Any]:
    """Strip ephemeral, view-once and document-with-caption envelopes, however deeply nested."""
    current = _as_dict(content)
    moved = True
    while moved:
        moved = False
        for key in ENVELOPE_KEYS:
            nested = _as_dict(current.get(key)).get("message")
            if isinstance(nested, dict):
                current = nested
                moved = True
                break
    return current


def _reply_reference(content: dict[str, Any]) -> str:
    for key in REPLY_CONTEXT_KEYS:
        context_info = _as_dict(content.get(key)).get("contextInfo")
        if isinstance(context_info, dict) and context_info:
            return str(context_info.get("stanzaId") or "").strip()
    return ""


def _text(value: object) -> str:
    return str(value) if value else ""


def parse_response_from_message(message: object) -> ParsedResponse | None:
    """Extract the structured reply carried by an inbound message.

    Sources, in order: button reply, list reply, template button reply,
    native-flow JSON, then plain or extended text.

    Returns:
        The parsed response, or None if the message carries nothing usable
    """
    if not isinstance(message, dict):
        return None

    content = unwrap_message_content(message.get("message"))
    reply_to = _reply_reference(content)

    buttons = _as_dict(content.get("buttonsResponseMessage"))
    if buttons.get("selectedButtonId") or buttons.get("selectedDisplayText"):
        return ParsedResponse(
            key=_text(buttons.get("selectedButtonId")),
            text=_text(buttons.get("selectedDisplayText")),
            reply_to_message_id=reply_to,
        )

    list_reply = _as_dict(content.get("listResponseMessage"))
    row_id = _as_dict(list_reply.get("singleSelectReply")).get("selectedRowId")
    if row_id or list_reply.get("title"):
        return ParsedResponse(key=_text(row_id), text=_text(list_reply.get("title")), reply_to_message_id=reply_to)

    template = _as_dict(content.get("templateButtonReplyMessage"))
    if template.get("selectedId") or template.get("selectedDisplayText"):
        return ParsedResponse(
            key=_text(template.get("selectedId")),
            text=_text(template.get("selectedDisplayText")),
            reply_to_message_id=reply_to,
        )

    native_flow = _as_dict(_as_dict(content.get("interactiveResponseMessage")).get("nativeFlowResponseMessage"))
    if native_flow.get("paramsJson"):
        try:
            params = _as_dict(json.loads(native_flow["paramsJson"]))
        except (TypeError, ValueError):
            params = None
        if params is not None:
            return ParsedResponse(
                key=_text(params.get("id") or params.get("selection_id")),
                text=_text(params.get("title") or params.get("text")),
                reply_to_message_id=reply_to,
            )

    text = content.get("conversation") or _as_dict(content.get("extendedTextMessage")).get("text")
    if text:
        return ParsedResponse(key="", text=str(text), reply_to_message_id=reply_to)

    return None


def resolve_sender_jid(message: object) -> str | None:
    """The JID of the person who wrote the message (the participant, for groups)."""
    key = _as_dict(_as_dict(message).get("key"))
    remote_jid = key.get("remoteJid")
    if not remote_jid:
        return None
    if str(remote_jid).endswith("@g.us"):
        return key.get("participant") or None
    return str(remote_jid)


def short_message_id(value: object) -> str | None:
    """Reduce a WAHA serialized id (`true_<chat>_<id>[_<participant>]`) to the bare message id."""
    if isinstance(value, dict):
        value = value.get("id") if isinstance(value.get("id"), str) else value.get("_serialized")
    if not value:
        return None

    text = str(value)
    parts = text.split("_")
    if len(parts) >= 3 and parts[0] in ("true", "false"):
        return parts[2]
    return text


def _to_baileys_jid(jid: object) -> str:
    text = str(jid or "")
    if text.endswith(WAHA_USER_SUFFIX):
        return text[: -len(WAHA_USER_SUFFIX)] + USER_SUFFIX
    return text


def _build_message_content(payload: dict[str, Any]) -> dict[str, Any]:
    data = _as_dict(payload.get("_data"))
    reply_to = short_message_id(_as_dict(payload.get("replyTo")).get("id") or payload.get("replyTo"))
    context_info = {"stanzaId": reply_to} if reply_to else {}

    button_id = payload.get("selectedButtonId") or data.get("selectedButtonId")
    if button_id:
        return {
            "buttonsResponseMessage": {
                "selectedButtonId": button_id,
                "selectedDisplayText": payload.get("body") or "",
                "contextInfo": context_info,
            }
        }

    row_id = payload.get("selectedRowId") or data.get("selectedRowId")
    if row_id:
        return {
            "listResponseMessage": {
                "title": payload.get("body") or "",
                "singleSelectReply": {"selectedRowId": row_id},
                "contextInfo": context_info,
            }
        }

    body = payload.get("body") or ""
    if context_info:
        return {"extendedTextMessage": {"text": body, "contextInfo": context_info}}
    return {"conversation": body}


def waha_event_to_messages(event: dict[str, Any]) -> list[dict[str, Any]]:
    """Convert a WAHA webhook event into Baileys-shaped messages.

    Engines that forward the raw Baileys message in `payload._data` are used
    as-is; otherwise the message is rebuilt from the WAHA fields.

    Returns:
        The messages carried by the event (empty for non-message events)
    """
    if event.get("event") not in WAHA_MESSAGE_EVENTS:
        return []

    payload = _as_dict(event.get("payload"))
    raw = _as_dict(payload.get("_data"))
    if isinstance(raw.get("key"), dict) and isinstance(raw.get("message"), dict):
        return [raw]

    if not payload.get("id") or not payload.get("from"):
        logger.debug("Ignoring WAHA event without id or sender", extra={"event": event.get("event")})
        return []

    key: dict[str, Any] = {
        "id": short_message_id(payload.get("id")),
        "remoteJid": _to_baileys_jid(payload.get("from")),
        "fromMe": bool(payload.get("fromMe")),
    }
    if payload.get("participant"):
        key["participant"] = _to_baileys_jid(payload["participant"])

    return [{"key": key, "message": _build_message_content(payload)}]
