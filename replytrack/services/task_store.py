"""Durable keyed storage for response tasks (SQLite via aiosqlite)."""

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from replytrack.core import clock, db_client
from replytrack.core.schema import TASK_COLUMNS, TASK_TABLE
from replytrack.domain.task import Task, TaskStatus


if TYPE_CHECKING:
    from replytrack.services.replica_sync import ReplicaSync


logger = logging.getLogger(__name__)

_JSON_COLUMNS = {
    "expected_json": "expected",
    "on_timeout_json": "on_timeout",
    "selected_json": "selected",
    "response_json": "response",
    "action_result_json": "action_result",
}
_RENAMED_COLUMNS = {"to_jid": "to"}
_OPTIONAL_MS_COLUMNS = ("created_at_ms", "expires_at_ms", "timeout_ms")


def task_to_row(task: Task) -> dict[str, Any]:
    """Flatten a task into storage columns, nested objects as JSON text."""
    data = task.model_dump(mode="json", by_alias=True)
    fields = task.model_dump(mode="json")
    row: dict[str, Any] = {}
    for column in TASK_COLUMNS:
        if column in _JSON_COLUMNS:
            alias = Task.model_fields[_JSON_COLUMNS[column]].alias or _JSON_COLUMNS[column]
            value = data.get(alias)
            row[column] = db_client.encode_value(value) if value is not None else None
        else:
            row[column] = fields.get(_RENAMED_COLUMNS.get(column, column))
    return row


def row_to_task(row: Mapping[str, Any]) -> Task | None:
    """Rebuild a task from storage columns (local row or replica record).

    Empty strings and zero timestamps written by a schemaless backend load as
    absent values. Returns None when the stored data no longer validates.
    """
    data: dict[str, Any] = {}
    for column, value in row.items():
        if column in _JSON_COLUMNS:
            data[_JSON_COLUMNS[column]] = db_client.decode_json(value)
            continue
        field = _RENAMED_COLUMNS.get(column, column)
        if field not in Task.model_fields:
            continue
        if value == "" or (field in _OPTIONAL_MS_COLUMNS and not value):
            value = None
        data[field] = value

    if data.get("expected") is None:
        data["expected"] = []
    if data.get("trigger_count") is None:
        data["trigger_count"] = 0

    try:
        return Task.model_validate(data)
    except (ValidationError, ValueError) as e:
        logger.warning("Skipping unreadable task record", extra={"task_id": data.get("id"), "error": str(e)})
        return None


class TaskStore:
    """Task persistence with merge-updates serialized by a single lock.

    Every mutation is mirrored to the replica (when attached) without
    waiting for it.
    """

    def __init__(self, *, db_path: str | None = None, replica: "ReplicaSync | None" = None) -> None:
        self._db_path = db_path
        self._lock = asyncio.Lock()
        self.replica = replica

    async def init(self) -> None:
        await db_client.init_db(db_path=self._db_path)

    async def close(self) -> None:
        await db_client.close_connection(db_path=self._db_path)

    async def _fetch(self, sql: str, params: Iterable[Any] = ()) -> list[Task]:
        conn = await db_client.get_connection(db_path=self._db_path)
        cursor = await conn.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        tasks = [row_to_task(dict(row)) for row in rows]
        return [task for task in tasks if task is not None]

    async def _write(self, task: Task) -> None:
        row = task_to_row(task)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn = await db_client.get_connection(db_path=self._db_path)
        await conn.execute(
            f"INSERT OR REPLACE INTO {TASK_TABLE} ({columns}) VALUES ({placeholders})",
            tuple(row.values()),
        )
        await conn.commit()

    def _mirror_upsert(self, task: Task) -> None:
        if self.replica is not None:
            self.replica.enqueue_upsert(task)

    async def get_all(self) -> list[Task]:
        """All tasks, newest first."""
        return await self._fetch(f"SELECT * FROM {TASK_TABLE} ORDER BY created_at_ms DESC")

    async def find(
        self,
        *,
        statuses: Iterable[str] | None = None,
        to: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Tasks filtered by status set and recipient, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            status_list = [str(status) for status in statuses]
            if not status_list:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        if to:
            clauses.append("to_jid = ?")
            params.append(to)

        sql = f"SELECT * FROM {TASK_TABLE}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at_ms DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._fetch(sql, params)

    async def get_by_id(self, task_id: str) -> Task | None:
        tasks = await self._fetch(f"SELECT * FROM {TASK_TABLE} WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None

    async def save(self, task: Task) -> Task:
        """Insert or replace a task by id."""
        async with self._lock:
            await self._write(task)
        self._mirror_upsert(task)
        return task

    async def update(
        self,
        task_id: str,
        patch: Mapping[str, Any] | Callable[[Task], Mapping[str, Any]],
        *,
        only_if_status: Iterable[TaskStatus] | None = None,
    ) -> Task | None:
        """Merge `patch` into a stored task and stamp a fresh `updated_at`.

        With `only_if_status`, the write happens only while the task is still in
        one of those statuses; this is how a caller claims a task. A callable
        patch is computed from the current record while the lock is held.

        Returns:
            The updated task, or None if it is missing or the status guard failed
        """
        async with self._lock:
            current = await self.get_by_id(task_id)
            if current is None:
                return None
            if only_if_status is not None and current.status not in set(only_if_status):
                return None

            changes = patch(current) if callable(patch) else patch
            merged = {**current.model_dump(), **changes, "id": current.id, "updated_at": clock.iso_now()}
            task = Task.model_validate(merged)
            await self._write(task)

        self._mirror_upsert(task)
        return task

    async def remove(self, task_id: str) -> bool:
        async with self._lock:
            conn = await db_client.get_connection(db_path=self._db_path)
            cursor = await conn.execute(f"DELETE FROM {TASK_TABLE} WHERE id = ?", (task_id,))
            await conn.commit()
            removed = cursor.rowcount > 0

        if removed and self.replica is not None:
            self.replica.enqueue_delete(task_id)
        return removed

    async def latest_updated_at_ms(self) -> int | None:
        """Most recent `updated_at` across all tasks, in epoch milliseconds."""
        conn = await db_client.get_connection(db_path=self._db_path)
        cursor = await conn.execute(f"SELECT updated_at FROM {TASK_TABLE}")
        stamps = [clock.parse_iso_ms(row[0]) for row in await cursor.fetchall()]
        known = [stamp for stamp in stamps if stamp is not None]
        return max(known) if known else None

    async def count(self) -> int:
        conn = await db_client.get_connection(db_path=self._db_path)
        cursor = await conn.execute(f"SELECT COUNT(*) FROM {TASK_TABLE}")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def replace_statuses(self, statuses: Iterable[TaskStatus], tasks: Iterable[Task]) -> int:
        """Replace every local task in `statuses` with `tasks`, without mirroring.

        Used to adopt the replica's snapshot on startup.
        """
        status_list = [str(status) for status in statuses]
        incoming = list(tasks)
        async with self._lock:
            conn = await db_client.get_connection(db_path=self._db_path)
            await conn.execute(
                f"DELETE FROM {TASK_TABLE} WHERE status IN ({', '.join('?' for _ in status_list)})",
                status_list,
            )
            await conn.commit()
            for task in incoming:
                await self._write(task)
        return len(incoming)
