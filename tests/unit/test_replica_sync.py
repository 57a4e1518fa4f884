"""Tests for the PocketBase task replica."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pocketbase.client import ClientResponseError

from replytrack.domain.task import ExpectedEntry, Task, TaskStatus
from replytrack.services.replica_sync import ReplicaSync, replica_record_to_task, task_to_replica_payload
from replytrack.services.task_store import TaskStore


def make_task(task_id: str = "t1", **overrides: object) -> Task:
    data: dict[str, object] = {
        "id": task_id,
        "status": TaskStatus.PENDING,
        "to": "5511900000000@s.whatsapp.net",
        "expected": [ExpectedEntry(key="yes")],
        "created_at_ms": 1_767_225_600_000,
        "updated_at": "2026-01-01T00:00:00.000Z",
        "trigger_count": 1,
    }
    data.update(overrides)
    return Task.model_validate(data)


def page(items: list | None = None, total: int | None = None) -> SimpleNamespace:
    items = items or []
    return SimpleNamespace(items=items, total_items=len(items) if total is None else total)


@pytest.fixture
def records() -> MagicMock:
    """The PocketBase record service for the replica collection."""
    service = MagicMock()
    service.get_list.return_value = page()
    return service


@pytest.fixture
async def replica(records: MagicMock) -> ReplicaSync:
    client = MagicMock()
    client.collection.return_value = records
    sync = ReplicaSync(client=client)
    await sync.connect()
    return sync


@pytest.mark.unit
class TestPayloads:
    def test_payload_uses_replica_field_names(self) -> None:
        payload = task_to_replica_payload(make_task())

        assert payload["task_id"] == "t1"
        assert payload["to"] == "5511900000000@s.whatsapp.net"
        assert payload["trigger_count"] == 1
        assert "id" not in payload
        assert "to_jid" not in payload

    def test_reduced_payload_drops_extended_fields(self) -> None:
        payload = task_to_replica_payload(make_task(), reduced=True)

        assert "trigger_count" not in payload
        assert "last_triggered_at" not in payload

    def test_record_round_trip(self) -> None:
        record = SimpleNamespace(id="rec1", collection_id="c", collection_name="response_tasks")
        record.__dict__.update(task_to_replica_payload(make_task()))

        task = replica_record_to_task(record)

        assert task is not None
        assert task.id == "t1"
        assert task.to == "5511900000000@s.whatsapp.net"
        assert task.expected[0].key == "yes"


@pytest.mark.unit
async def test_connect_failure_disables_replica(records: MagicMock) -> None:
    records.get_list.side_effect = RuntimeError("connection refused")
    client = MagicMock()
    client.collection.return_value = records
    sync = ReplicaSync(client=client)

    assert await sync.connect() is False
    sync.enqueue_upsert(make_task())
    await sync.start()
    await sync.stop()

    records.create.assert_not_called()


@pytest.mark.unit
async def test_upsert_creates_then_updates(replica: ReplicaSync, records: MagicMock) -> None:
    await replica.upsert(make_task())
    records.create.assert_called_once()

    records.get_list.return_value = page([SimpleNamespace(id="rec1")])
    await replica.upsert(make_task(notes="changed"))

    record_id, payload = records.update.call_args.args
    assert record_id == "rec1"
    assert payload["notes"] == "changed"


@pytest.mark.unit
async def test_legacy_collection_downgrades_payload(replica: ReplicaSync, records: MagicMock) -> None:
    mismatch = ClientResponseError(
        "Failed to create record.",
        status=400,
        data={"data": {"trigger_count": {"code": "validation_unknown_field"}}},
    )
    records.create.side_effect = [mismatch, None, None]

    await replica.upsert(make_task("t1"))
    await replica.upsert(make_task("t2"))

    assert replica.reduced_payload is True
    payloads = [call.args[0] for call in records.create.call_args_list]
    assert "trigger_count" in payloads[0]
    assert "trigger_count" not in payloads[1]
    assert "trigger_count" not in payloads[2]


@pytest.mark.unit
async def test_other_errors_are_not_downgraded(replica: ReplicaSync, records: MagicMock) -> None:
    records.create.side_effect = ClientResponseError("Forbidden", status=403, data={})

    with pytest.raises(ClientResponseError):
        await replica.upsert(make_task())
    assert replica.reduced_payload is False


@pytest.mark.unit
async def test_worker_applies_queued_jobs_in_order(replica: ReplicaSync, records: MagicMock) -> None:
    await replica.start()
    replica.enqueue_upsert(make_task())
    records.get_list.return_value = page([SimpleNamespace(id="rec1")])
    replica.enqueue_delete("t1")
    await replica.stop()

    records.delete.assert_called_once_with("rec1")


@pytest.mark.unit
async def test_worker_survives_failed_jobs(replica: ReplicaSync, records: MagicMock) -> None:
    records.create.side_effect = [RuntimeError("boom"), None]
    await replica.start()
    replica.enqueue_upsert(make_task("t1"))
    replica.enqueue_upsert(make_task("t2"))
    await replica.stop()

    assert records.create.call_count == 2


@pytest.mark.unit
class TestReconcile:
    async def test_empty_replica_is_seeded_from_local(
        self, replica: ReplicaSync, records: MagicMock, store: TaskStore
    ) -> None:
        await store.save(make_task("active"))
        await store.save(make_task("done", status=TaskStatus.COMPLETED))

        await replica.reconcile(store)

        seeded = [call.args[0]["task_id"] for call in records.create.call_args_list]
        assert seeded == ["active"]

    async def test_newer_replica_replaces_local_active_tasks(
        self, replica: ReplicaSync, records: MagicMock, store: TaskStore
    ) -> None:
        await store.save(make_task("local", updated_at="2026-01-01T00:00:00.000Z"))
        remote = SimpleNamespace(id="rec1", updated_at="2026-02-01T00:00:00.000Z")
        remote.__dict__.update(
            task_to_replica_payload(make_task("remote", status=TaskStatus.PERSISTENT, updated_at=remote.updated_at))
        )
        records.get_list.return_value = page([remote])
        records.get_full_list.return_value = [remote]

        await replica.reconcile(store)

        assert [task.id for task in await store.get_all()] == ["remote"]

    async def test_older_replica_keeps_local_tasks(
        self, replica: ReplicaSync, records: MagicMock, store: TaskStore
    ) -> None:
        await store.save(make_task("local", updated_at="2026-03-01T00:00:00.000Z"))
        records.get_list.return_value = page([SimpleNamespace(id="rec1", updated_at="2026-02-01T00:00:00.000Z")])

        await replica.reconcile(store)

        records.get_full_list.assert_not_called()
        assert [task.id for task in await store.get_all()] == ["local"]

    async def test_failures_are_logged_not_raised(
        self, replica: ReplicaSync, records: MagicMock, store: TaskStore
    ) -> None:
        records.get_list.side_effect = RuntimeError("gone")

        await replica.reconcile(store)
