"""SQLite connection management for the local task store."""

import asyncio
import json
import logging
import threading
from datetime import datetime
from pathlib import Path

import aiosqlite

from replytrack.core.config import settings
from replytrack.core.schema import init_local_schema


logger = logging.getLogger(__name__)


def get_db_path(db_path: str | None = None) -> Path:
    """Get the resolved SQLite database file path."""
    path_str = db_path or settings.sqlite_db_path
    return Path(path_str).resolve()


def encode_value(value: object) -> object:
    """Encode a Python value for a SQLite parameter (JSON text for nested data)."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    return value


def decode_json(text: str | None, fallback: object = None) -> object:
    """Decode a JSON text column, returning `fallback` for empty or corrupt values."""
    if not text:
        return fallback
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return fallback


# One connection per (thread, event loop, file): aiosqlite connections are bound to the loop that opened them
_connections: dict[tuple[int, int, str], aiosqlite.Connection] = {}
_connections_lock = asyncio.Lock()


def _connection_key(db_path: str | None) -> tuple[tuple[int, int, str], Path]:
    path = get_db_path(db_path)
    return (threading.get_ident(), id(asyncio.get_running_loop()), str(path)), path


async def get_connection(*, db_path: str | None = None) -> aiosqlite.Connection:
    """Return the cached connection for this loop and file, opening it (WAL, Row factory) on first use."""
    key, path = _connection_key(db_path)
    conn = _connections.get(key)
    if conn is not None:
        return conn

    async with _connections_lock:
        if key in _connections:
            return _connections[key]

        path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(path))
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode = WAL")
        _connections[key] = conn

    logger.info("Opened SQLite connection", extra={"db_path": str(path)})
    return conn


async def close_connection(*, db_path: str | None = None) -> None:
    key, path = _connection_key(db_path)
    async with _connections_lock:
        conn = _connections.pop(key, None)
    if conn is None:
        return

    try:
        await conn.close()
    except (aiosqlite.Error, ValueError) as e:
        logger.warning("Error closing SQLite connection", extra={"error": str(e), "db_path": str(path)})
        return
    logger.info("Closed SQLite connection", extra={"db_path": str(path)})


async def init_db(*, db_path: str | None = None) -> None:
    """Create the task table and add any optional columns a legacy file lacks."""
    await init_local_schema(await get_connection(db_path=db_path))
