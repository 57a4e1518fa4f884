"""Logging setup: stdlib loggers everywhere, shipped to Pydantic Logfire when a token is set.

Modules log with `logging.getLogger(__name__)` and put structured fields in
`extra`. Task lifecycle lines (TASK_CREATED, TASK_RELATED, TASK_TIMEOUT_ACTION_*)
start with a `dd/mm/yyyy | hh:mm` stamp so they read well in plain log tails.
"""

import logging
from datetime import datetime

import logfire
from fastapi import FastAPI

from replytrack.core.config import settings


logger = logging.getLogger(__name__)


def configure_logfire() -> None:
    logfire.configure(
        token=settings.logfire_token,
        service_name="replytrack",
        service_version="0.1.0",
        send_to_logfire="if-token-present",
    )
    logging.basicConfig(level=logging.INFO, handlers=[logfire.LogfireLoggingHandler()])
    logger.info("Logfire configured", extra={"remote": bool(settings.logfire_token)})


def instrument_fastapi(app: FastAPI) -> None:
    logfire.instrument_fastapi(app)


def span(name: str) -> logfire.LogfireSpan:
    """Open a Logfire span around a service operation, e.g. `with span("correlation_service.maintenance"):`."""
    return logfire.span(name)


def log_with_context(logger: logging.Logger, level: str, message: str, **context: object) -> None:
    """Log `message` at `level` with `context` as structured fields (task_id, to, ...)."""
    getattr(logger, level.lower())(message, extra=context)


def format_timestamp_br(moment: datetime | None = None) -> str:
    return (moment or datetime.now()).strftime("%d/%m/%Y | %H:%M")


def log_task_debug(logger: logging.Logger, message: str, **context: object) -> None:
    """Matching diagnostics, emitted only with TASK_DEBUG=true."""
    if settings.task_debug:
        log_with_context(logger, "info", f"[TASK] {message}", **context)
