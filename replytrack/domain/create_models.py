"""Request models for creating tasks through the API."""

from typing import Any

from replytrack.domain.task import CamelModel


class PersistentCommandCreate(CamelModel):
    """Body of POST /api/tasks/permanent.

    Either `expected` or the `trigger` shorthand must be given; the shorthand
    becomes a single alias entry bound to `action`.
    """

    to: str | None = None
    expected: list[dict[str, Any]] | None = None
    trigger: str | None = None
    action: dict[str, Any] | None = None
    notes: str | None = None

    def expected_entries(self) -> list[dict[str, Any]]:
        if self.expected is not None:
            return self.expected
        return [{"key": "", "aliases": [(self.trigger or "").strip()], "action": self.action}]

