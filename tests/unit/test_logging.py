"""Tests for structured logging helpers."""

import logging
from datetime import datetime

import pytest

from replytrack.core import logging as logging_module
from replytrack.core.logging import format_timestamp_br, log_task_debug, log_with_context


@pytest.mark.unit
def test_log_with_context_attaches_extra(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("replytrack.test")

    with caplog.at_level(logging.INFO, logger="replytrack.test"):
        log_with_context(logger, "info", "TASK_CREATED", task_id="t1")

    assert caplog.records[0].task_id == "t1"


@pytest.mark.unit
def test_task_debug_only_when_enabled(caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch) -> None:
    logger = logging.getLogger("replytrack.test")

    with caplog.at_level(logging.INFO, logger="replytrack.test"):
        monkeypatch.setattr(logging_module.settings, "task_debug", False)
        log_task_debug(logger, "hidden")
        monkeypatch.setattr(logging_module.settings, "task_debug", True)
        log_task_debug(logger, "candidates", count=2)

    assert [record.getMessage() for record in caplog.records] == ["[TASK] candidates"]


@pytest.mark.unit
def test_format_timestamp_br() -> None:
    assert format_timestamp_br(datetime(2026, 3, 7, 9, 5)) == "07/03/2026 | 09:05"
