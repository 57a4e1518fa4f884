"""Matching of inbound replies against expected entries.

Comparison is case-, diacritic- and whitespace-insensitive. For each entry,
priority is: exact key > alias equal to or contained in the reply text >
alias equal to or contained in the reply key.
"""

import re
import unicodedata
from typing import Any

from replytrack.domain.task import ExpectedEntry, ParsedResponse


def normalize_text(value: object) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", str(value or ""))
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", without_marks).strip().lower()


def _alias_hit(aliases: list[str], candidate: str) -> bool:
    return bool(candidate) and any(alias and (alias == candidate or alias in candidate) for alias in aliases)


def matches_expected(expected: list[ExpectedEntry], response: ParsedResponse) -> ExpectedEntry | None:
    """Return the first expected entry the response satisfies, or None."""
    response_key = normalize_text(response.key)
    response_text = normalize_text(response.text)

    for item in expected:
        key = normalize_text(item.key)
        if key and response_key and key == response_key:
            return item

        aliases = [normalize_text(alias) for alias in item.aliases]
        if _alias_hit(aliases, response_text):
            return item

        if _alias_hit(aliases, response_key):
            return item

    return None


def normalize_expected(expected: list[Any] | None) -> list[ExpectedEntry]:
    """Clean raw expected entries: trim keys and aliases, drop entries with neither.

    Raises:
        TaskValidationError: if an entry carries an invalid action
    """
    items: list[ExpectedEntry] = []
    for raw in expected or []:
        if isinstance(raw, ExpectedEntry):
            raw = raw.model_dump()  # noqa: PLW2901
        if not isinstance(raw, dict):
            continue

        key = str(raw.get("key") or "").strip()
        raw_aliases = raw.get("aliases")
        aliases = (
            [str(alias).strip() for alias in raw_aliases if str(alias or "").strip()]
            if isinstance(raw_aliases, list)
            else []
        )
        if not key and not aliases:
            continue

        action = raw.get("action") if isinstance(raw.get("action"), dict) else None
        items.append(ExpectedEntry(key=key, aliases=aliases, action=action))
    return items
