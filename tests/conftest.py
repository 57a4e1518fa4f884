"""Pytest configuration and shared fixtures."""

from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest

from replytrack.core import clock
from replytrack.services.task_store import TaskStore


class FrozenClock:
    """Controllable replacement for the engine's millisecond clock."""

    def __init__(self, now_ms: int) -> None:
        self.now = now_ms

    def advance(self, ms: int) -> None:
        self.now += ms

    def now_ms(self) -> int:
        return self.now


@pytest.fixture
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> Generator[FrozenClock, None, None]:
    """Freeze `clock.now_ms` (and everything derived from it) at a fixed instant."""
    frozen = FrozenClock(1_767_225_600_000)  # 2026-01-01T00:00:00Z
    monkeypatch.setattr(clock, "now_ms", frozen.now_ms)
    yield frozen


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "tasks.db")


@pytest.fixture
async def store(db_path: str) -> AsyncIterator[TaskStore]:
    """A fresh task store backed by a temporary SQLite file."""
    task_store = TaskStore(db_path=db_path)
    await task_store.init()
    yield task_store
    await task_store.close()
