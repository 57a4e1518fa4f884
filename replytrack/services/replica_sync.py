"""Best-effort mirror of the task store in a PocketBase collection."""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from pocketbase import PocketBase
from pocketbase.client import ClientResponseError
from pocketbase.services.record_service import RecordService

from replytrack.core import clock
from replytrack.core.config import constants, settings
from replytrack.core.schema import REPLICA_EXTENDED_FIELDS
from replytrack.domain.task import REPLICATED_ACTIVE_STATUSES, Task
from replytrack.services.task_store import row_to_task, task_to_row


if TYPE_CHECKING:
    from replytrack.services.task_store import TaskStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


def task_to_replica_payload(task: Task, *, reduced: bool = False) -> dict[str, Any]:
    """Build the replica record body for a task.

    The reduced payload omits the fields legacy collections do not have.
    """
    row = task_to_row(task)
    payload: dict[str, Any] = {"task_id": row.pop("id"), "to": row.pop("to_jid")}
    payload.update(row)
    if reduced:
        for field in REPLICA_EXTENDED_FIELDS:
            payload.pop(field, None)
    return payload


def replica_record_to_task(record: object) -> Task | None:
    """Rebuild a task from a PocketBase record."""
    data = dict(record.__dict__) if hasattr(record, "__dict__") else dict(record)
    row = {key: value for key, value in data.items() if key not in ("id", "collection_id", "collection_name")}
    row["id"] = data.get("task_id")
    row["to_jid"] = row.pop("to", None)
    if not row["id"]:
        return None
    return row_to_task(row)


def _is_schema_mismatch(error: ClientResponseError) -> bool:
    if error.status != 400:
        return False
    detail = f"{error} {getattr(error, 'data', '')}"
    return any(field in detail for field in REPLICA_EXTENDED_FIELDS)


class ReplicaSync:
    """Serialized replication of local task mutations to PocketBase.

    Jobs are queued by the store and applied by a single worker, so only one
    replica call is in flight. Failures are logged and dropped.
    """

    def __init__(
        self,
        client: PocketBase | None = None,
        *,
        collection: str = constants.REPLICA_COLLECTION,
    ) -> None:
        self._client = client or PocketBase(settings.pocketbase_url)
        self._collection = collection
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.enabled = False
        # Set once the remote collection rejects the extended fields
        self.reduced_payload = False

    async def _call(self, func: Callable[..., T], *args: object, **kwargs: object) -> T:
        # The PocketBase SDK is synchronous
        return await asyncio.to_thread(func, *args, **kwargs)

    def _records(self) -> RecordService:
        return self._client.collection(self._collection)

    async def connect(self) -> bool:
        """Authenticate (when credentials are set) and check the collection is reachable.

        Leaves the replica disabled if PocketBase cannot be reached.
        """
        try:
            if settings.pocketbase_admin_email and settings.pocketbase_admin_password:
                await self._call(
                    self._client.admins.auth_with_password,
                    settings.pocketbase_admin_email,
                    settings.pocketbase_admin_password,
                )
            await self._call(self._records().get_list, 1, 1)
        except Exception as e:
            logger.warning("Task replica unavailable, continuing without it", extra={"error": str(e)})
            self.enabled = False
            return False

        self.enabled = True
        logger.info("Task replica connected", extra={"collection": self._collection})
        return True

    async def start(self) -> None:
        if self.enabled and self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Drain queued jobs, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    def enqueue_upsert(self, task: Task) -> None:
        if self.enabled:
            self._queue.put_nowait(("upsert", task))

    def enqueue_delete(self, task_id: str) -> None:
        if self.enabled:
            self._queue.put_nowait(("delete", task_id))

    async def _run(self) -> None:
        while True:
            kind, item = await self._queue.get()
            try:
                if kind == "upsert":
                    await self.upsert(item)
                else:
                    await self.delete(item)
            except Exception as e:
                logger.warning("Task replica job failed", extra={"job": kind, "error": str(e)})
            finally:
                self._queue.task_done()

    async def _find_record_id(self, task_id: str) -> str | None:
        result = await self._call(
            self._records().get_list, 1, 1, {"filter": f'task_id = "{task_id}"'}
        )
        return result.items[0].id if result.items else None

    async def upsert(self, task: Task) -> None:
        """Create or update the replica record for a task, downgrading the payload on a legacy schema."""
        record_id = await self._find_record_id(task.id)
        try:
            await self._write(record_id, task_to_replica_payload(task, reduced=self.reduced_payload))
        except ClientResponseError as e:
            if self.reduced_payload or not _is_schema_mismatch(e):
                raise
            self.reduced_payload = True
            logger.warning(
                "Task replica schema lacks extended fields, switching to reduced payload",
                extra={"fields": list(REPLICA_EXTENDED_FIELDS)},
            )
            await self._write(record_id, task_to_replica_payload(task, reduced=True))

    async def _write(self, record_id: str | None, payload: dict[str, Any]) -> None:
        if record_id:
            await self._call(self._records().update, record_id, payload)
        else:
            await self._call(self._records().create, payload)

    async def delete(self, task_id: str) -> None:
        record_id = await self._find_record_id(task_id)
        if record_id:
            await self._call(self._records().delete, record_id)

    async def fetch_active(self) -> list[Task]:
        """Remote snapshot of tasks in an active status."""
        status_filter = " || ".join(f'status = "{status}"' for status in sorted(REPLICATED_ACTIVE_STATUSES))
        records = await self._call(
            self._records().get_full_list,
            constants.REPLICA_PAGE_SIZE,
            {"filter": status_filter},
        )
        tasks = [replica_record_to_task(record) for record in records]
        return [task for task in tasks if task is not None]

    async def remote_summary(self) -> tuple[int, int | None]:
        """Total remote records and the latest `updated_at` among them."""
        result = await self._call(self._records().get_list, 1, 1, {"sort": "-updated_at"})
        latest = clock.parse_iso_ms(getattr(result.items[0], "updated_at", None)) if result.items else None
        return result.total_items, latest

    async def reconcile(self, store: "TaskStore") -> None:
        """Startup reconciliation between the local store and the replica.

        The side with the newer `updated_at` wins for active tasks. An empty
        replica is seeded from the local store.
        """
        if not self.enabled:
            return

        try:
            remote_total, remote_latest = await self.remote_summary()
            local_latest = await store.latest_updated_at_ms()
            local_total = await store.count()

            if remote_total == 0:
                if local_total:
                    active = await store.find(statuses=REPLICATED_ACTIVE_STATUSES)
                    for task in active:
                        await self.upsert(task)
                    logger.info("Seeded task replica from local store", extra={"count": len(active)})
                return

            if local_total == 0 or local_latest is None or (remote_latest or 0) > local_latest:
                remote_active = await self.fetch_active()
                count = await store.replace_statuses(REPLICATED_ACTIVE_STATUSES, remote_active)
                logger.info(
                    "Adopted active tasks from replica",
                    extra={"count": count, "remote_latest": remote_latest, "local_latest": local_latest},
                )
        except Exception as e:
            logger.warning("Task replica reconciliation failed", extra={"error": str(e)})
