"""Domain models and DTOs."""

from replytrack.domain.create_models import PersistentCommandCreate
from replytrack.domain.task import (
    ACTIVE_STATUSES,
    OPEN_TEMPORARY_STATUSES,
    REPLICATED_ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Action,
    ExpectedEntry,
    NoOpAction,
    OnTimeout,
    ParsedResponse,
    SelectedEntry,
    SendAction,
    Task,
    TaskScope,
    TaskStatus,
    WebhookAction,
    parse_action,
)


__all__ = [
    "ACTIVE_STATUSES",
    "OPEN_TEMPORARY_STATUSES",
    "REPLICATED_ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Action",
    "ExpectedEntry",
    "NoOpAction",
    "OnTimeout",
    "ParsedResponse",
    "PersistentCommandCreate",
    "SelectedEntry",
    "SendAction",
    "Task",
    "TaskScope",
    "TaskStatus",
    "WebhookAction",
    "parse_action",
]
