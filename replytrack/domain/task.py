"""Response task domain models and enums."""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from replytrack.core.errors import ErrorCode, TaskValidationError


class TaskStatus(StrEnum):
    """Task lifecycle state."""

    PENDING = "pending"
    ATTENDING = "attending"
    PERSISTENT = "persistent"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Tasks that can still be matched by an inbound message
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.PERSISTENT})
# Temporary tasks that still own their conversation
OPEN_TEMPORARY_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.ATTENDING})
# Stored active records, mirrored from the replica on startup
REPLICATED_ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.ATTENDING, TaskStatus.PERSISTENT})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.EXPIRED, TaskStatus.CANCELLED})


class TaskScope(StrEnum):
    """Kind of conversation a task is bound to."""

    PRIVATE = "private"
    GROUP = "group"
    BROADCAST = "broadcast"
    STATUS = "status"


class CamelModel(BaseModel):
    """Base model accepting and emitting the camelCase field names used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendAction(CamelModel):
    """Send another outbound message, optionally spawning a chained task."""

    mode: Literal["send"] = "send"
    payload: dict[str, Any]
    to: str | None = None


class WebhookAction(CamelModel):
    """Call an HTTP endpoint with the task context injected into the body."""

    mode: Literal["webhook"] = "webhook"
    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    timeout_ms: int | None = None


class NoOpAction(CamelModel):
    """Explicitly do nothing."""

    mode: Literal["none"] = "none"


Action = Annotated[SendAction | WebhookAction | NoOpAction, Field(discriminator="mode")]


def parse_action(raw: object) -> SendAction | WebhookAction | NoOpAction | None:
    """Build a typed action from a loosely shaped action object.

    `mode: "send"` wins, then any object carrying a `url`, then `mode: "none"`.

    Raises:
        TaskValidationError: ACTION_PAYLOAD_REQUIRED or INVALID_ACTION
    """
    if raw is None:
        return None
    if isinstance(raw, SendAction | WebhookAction | NoOpAction):
        return raw
    if not isinstance(raw, dict):
        raise TaskValidationError(ErrorCode.INVALID_ACTION)

    mode = str(raw.get("mode") or "").lower()
    if mode == "send":
        payload = raw.get("payload")
        if not isinstance(payload, dict) or not payload:
            raise TaskValidationError(ErrorCode.ACTION_PAYLOAD_REQUIRED)
        try:
            return SendAction.model_validate({**raw, "mode": "send"})
        except ValidationError as e:
            raise TaskValidationError(ErrorCode.INVALID_ACTION) from e

    if raw.get("url"):
        headers = raw.get("headers") if isinstance(raw.get("headers"), dict) else {}
        body = raw.get("body") if isinstance(raw.get("body"), dict) else None
        try:
            return WebhookAction.model_validate(
                {
                    **raw,
                    "mode": "webhook",
                    "method": str(raw.get("method") or "POST").upper(),
                    "headers": {str(k): str(v) for k, v in headers.items()},
                    "body": body,
                }
            )
        except ValidationError as e:
            raise TaskValidationError(ErrorCode.INVALID_ACTION) from e

    if mode == "none":
        return NoOpAction()

    raise TaskValidationError(ErrorCode.INVALID_ACTION)


class ExpectedEntry(CamelModel):
    """One acceptable reply and the action bound to it."""

    key: str = ""
    aliases: list[str] = Field(default_factory=list)
    action: Action | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value: object) -> SendAction | WebhookAction | NoOpAction | None:
        return parse_action(value)


class OnTimeout(CamelModel):
    """What to run when a temporary task expires unanswered."""

    action: Action | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value: object) -> SendAction | WebhookAction | NoOpAction | None:
        return parse_action(value)


class SelectedEntry(CamelModel):
    """The expected entry an inbound reply matched."""

    key: str = ""
    aliases: list[str] = Field(default_factory=list)


class ParsedResponse(CamelModel):
    """Structured reply extracted from an inbound message."""

    key: str = ""
    text: str = ""
    reply_to_message_id: str = ""


class Task(CamelModel):
    """A single outstanding or historical correlation between a prompt and its reply."""

    id: str = Field(..., description="Unique task ID (UUID4)")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Current lifecycle state")
    to: str | None = Field(default=None, description="Normalized recipient JID")
    scope: TaskScope | None = Field(default=None, description="Conversation kind derived from `to`")
    request_body_type: str | None = Field(default=None, description="Outbound request type that created the task")
    sent_message_id: str | None = Field(default=None, description="Outbound message replies are threaded to")
    expected: list[ExpectedEntry] = Field(default_factory=list, description="Acceptable replies")
    on_timeout: OnTimeout | None = Field(default=None, description="Action run on expiry")
    selected: SelectedEntry | None = Field(default=None, description="Matched expected entry")
    response: ParsedResponse | None = Field(default=None, description="Matched inbound response")
    action_result: dict[str, Any] | None = Field(default=None, description="Outcome of match/timeout actions")
    created_at: str | None = None
    created_at_ms: int | None = None
    expires_at: str | None = None
    expires_at_ms: int | None = None
    timeout_ms: int | None = None
    updated_at: str | None = None
    attending_at: str | None = None
    completed_at: str | None = None
    expired_at: str | None = None
    cancelled_at: str | None = None
    notes: str | None = None
    trigger_count: int = 0
    last_triggered_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_api(self) -> dict[str, Any]:
        """Serialize with the camelCase field names used by the HTTP API."""
        return self.model_dump(mode="json", by_alias=True)
