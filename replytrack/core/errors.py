"""Error codes and exceptions raised by the correlation engine."""

from pydantic import BaseModel


class ErrorCode:
    """Error codes surfaced to API callers."""

    # Task creation
    AWAIT_RESPONSE_EXPECTED_REQUIRED = "AWAIT_RESPONSE_EXPECTED_REQUIRED"
    PERSISTENT_EXPECTED_REQUIRED = "PERSISTENT_EXPECTED_REQUIRED"
    ACTION_PAYLOAD_REQUIRED = "ACTION_PAYLOAD_REQUIRED"
    INVALID_ACTION = "INVALID_ACTION"
    TO_REQUIRED = "TO_REQUIRED"
    TO_INVALID = "TO_INVALID"
    TO_INVALID_JID = "TO_INVALID_JID"

    # Outbound send
    SOCKET_NOT_AVAILABLE = "SOCKET_NOT_AVAILABLE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_PAYLOAD_SHAPE = "INVALID_PAYLOAD_SHAPE"
    UNSUPPORTED_MESSAGE_TYPE = "UNSUPPORTED_MESSAGE_TYPE"
    UNSUPPORTED_CONTENT = "UNSUPPORTED_CONTENT"
    TO_AND_TEXT_REQUIRED = "TO_AND_TEXT_REQUIRED"
    CONTENT_OBJECT_REQUIRED = "CONTENT_OBJECT_REQUIRED"
    SEND_FAILED = "SEND_FAILED"
    BOT_NOT_STARTED = "BOT_NOT_STARTED"
    QR_REQUIRED = "QR_REQUIRED"
    LOGGED_OUT = "LOGGED_OUT"
    BOT_OFFLINE = "BOT_OFFLINE"

    # Lookups
    TASK_NOT_FOUND = "TASK_NOT_FOUND"

    # Actions
    ACTION_EXECUTION_FAILED = "ACTION_EXECUTION_FAILED"
    TIMEOUT_ACTION_FAILED = "TIMEOUT_ACTION_FAILED"

    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTH_TOKEN_NOT_DEFINED = "AUTH_TOKEN_NOT_DEFINED"


class ReplytrackError(Exception):
    """Base error carrying a machine-readable code."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class TaskValidationError(ReplytrackError):
    """Raised synchronously when a task cannot be created as requested."""


class SendError(ReplytrackError):
    """Raised when an outbound message cannot be built or delivered."""


class ApiError(ReplytrackError):
    """Raised by the HTTP layer to answer with an error code and status."""

    def __init__(self, code: str, status_code: int, message: str | None = None) -> None:
        super().__init__(code, message)
        self.status_code = status_code


class ErrorResponse(BaseModel):
    """Structured error body returned by the HTTP layer."""

    error: str
    message: str | None = None


def to_error_response(exc: ReplytrackError) -> ErrorResponse:
    """Render an engine error as the API error body."""
    message = str(exc)
    return ErrorResponse(error=exc.code, message=None if message == exc.code else message)
