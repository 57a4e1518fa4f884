"""WhatsApp JID normalization.

Supported destinations:
- user: 5582999999999, +55 82 99999-9999, 5582999999999@s.whatsapp.net, 5582999999999@c.us
- group: 123456789-123456@g.us
- broadcast list: 123456789@broadcast
- status: status@broadcast
- linked id: abc123@lid
"""

import re

from replytrack.core.errors import ErrorCode, TaskValidationError


USER_JID_REGEX = re.compile(r"^\d{5,20}(?::\d+)?@s\.whatsapp\.net$")
GROUP_JID_REGEX = re.compile(r"^\d{5,30}-\d{5,30}@g\.us$")
BROADCAST_JID_REGEX = re.compile(r"^\d+@broadcast$")
LID_JID_REGEX = re.compile(r"^[^@\s]+@lid$")

USER_SUFFIX = "@s.whatsapp.net"
WAHA_USER_SUFFIX = "@c.us"
STATUS_JID = "status@broadcast"


def _normalize_phone_number(value: str) -> str:
    number = re.sub(r"\D", "", value)
    if not number:
        raise TaskValidationError(ErrorCode.TO_INVALID)
    return number


def normalize_jid(to: str | None) -> str:
    """Return the canonical JID for a destination.

    Raises:
        TaskValidationError: TO_INVALID for empty input, TO_INVALID_JID for an unrecognized JID
    """
    if not to or not isinstance(to, str):
        raise TaskValidationError(ErrorCode.TO_INVALID)

    raw = to.strip()
    if not raw:
        raise TaskValidationError(ErrorCode.TO_INVALID)

    if "@" not in raw:
        return f"{_normalize_phone_number(raw)}{USER_SUFFIX}"

    jid = raw.lower()
    if jid.endswith(WAHA_USER_SUFFIX):
        jid = jid[: -len(WAHA_USER_SUFFIX)] + USER_SUFFIX

    if (
        jid == STATUS_JID
        or USER_JID_REGEX.match(jid)
        or GROUP_JID_REGEX.match(jid)
        or BROADCAST_JID_REGEX.match(jid)
        or LID_JID_REGEX.match(jid)
    ):
        return jid

    raise TaskValidationError(ErrorCode.TO_INVALID_JID)


def extract_phone_number(value: str | None) -> str | None:
    """Extract the bare phone number from a number or a user JID.

    Group, broadcast and linked-id JIDs carry no phone number and return None.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip().lower()
    if not text:
        return None

    if "@" not in text:
        return re.sub(r"\D", "", text.split(":")[0]) or None

    local_part, domain = text.split("@", 1)
    if domain in ("s.whatsapp.net", "c.us"):
        return re.sub(r"\D", "", local_part.split(":")[0]) or None

    return None


def infer_scope_from_jid(jid: str | None) -> str:
    """Classify a JID as private, group, broadcast or status."""
    value = (jid or "").lower()
    if value == STATUS_JID:
        return "status"
    if value.endswith("@g.us"):
        return "group"
    if value.endswith("@broadcast"):
        return "broadcast"
    return "private"


def same_actor(task_to: str | None, sender_jid: str | None) -> bool:
    """Return True when a task recipient and an inbound sender are the same person."""
    task_lower = (task_to or "").lower()
    sender_lower = (sender_jid or "").lower()
    if task_lower and sender_lower and task_lower == sender_lower:
        return True

    task_number = extract_phone_number(task_lower)
    sender_number = extract_phone_number(sender_lower)
    if task_number and sender_number:
        return task_number == sender_number

    return False


def to_waha_chat_id(jid: str) -> str:
    """Convert a canonical user JID to the WAHA chat id format (`@c.us`)."""
    if jid.endswith(USER_SUFFIX):
        return jid[: -len(USER_SUFFIX)].split(":")[0] + WAHA_USER_SUFFIX
    return jid
