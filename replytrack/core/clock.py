"""Millisecond clock and ISO timestamp helpers shared by the task engine."""

import time
from datetime import UTC, datetime

from dateutil import parser as dateutil_parser


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_from_ms(value_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with a `Z` suffix."""
    moment = datetime.fromtimestamp(value_ms / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return iso_from_ms(now_ms())


def parse_iso_ms(value: str | None) -> int | None:
    """Parse an ISO timestamp into epoch milliseconds, or None if unparseable."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        parsed = dateutil_parser.isoparse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    result = int(parsed.timestamp() * 1000)
    return result if result > 0 else None
