"""Task table schema (local SQLite) and replica collection schema (PocketBase)."""

import logging
from typing import Any

import aiosqlite
import httpx
from pocketbase import PocketBase
from pocketbase.client import ClientResponseError

from replytrack.core.config import constants, settings


logger = logging.getLogger(__name__)


TASK_TABLE = "response_tasks"

# Column name -> SQLite type. Order is the order of the stored row.
TASK_COLUMNS: dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "status": "TEXT NOT NULL",
    "to_jid": "TEXT",
    "scope": "TEXT",
    "request_body_type": "TEXT",
    "sent_message_id": "TEXT",
    "expected_json": "TEXT",
    "on_timeout_json": "TEXT",
    "selected_json": "TEXT",
    "response_json": "TEXT",
    "action_result_json": "TEXT",
    "created_at": "TEXT",
    "created_at_ms": "INTEGER",
    "expires_at": "TEXT",
    "expires_at_ms": "INTEGER",
    "timeout_ms": "INTEGER",
    "updated_at": "TEXT",
    "attending_at": "TEXT",
    "completed_at": "TEXT",
    "expired_at": "TEXT",
    "cancelled_at": "TEXT",
    "notes": "TEXT",
    "trigger_count": "INTEGER NOT NULL DEFAULT 0",
    "last_triggered_at": "TEXT",
}

# Columns present since the first release; everything else is added on open
BASE_COLUMNS = (
    "id",
    "status",
    "to_jid",
    "scope",
    "sent_message_id",
    "expected_json",
    "on_timeout_json",
    "selected_json",
    "response_json",
    "action_result_json",
    "created_at",
    "created_at_ms",
    "expires_at",
    "expires_at_ms",
    "timeout_ms",
    "updated_at",
    "notes",
)

# Replica fields missing from legacy PocketBase collections
REPLICA_EXTENDED_FIELDS = ("trigger_count", "last_triggered_at")


async def init_local_schema(conn: aiosqlite.Connection) -> None:
    """Create the task table and add optional columns missing from an older file (idempotent)."""
    columns_sql = ", ".join(f"{name} {TASK_COLUMNS[name]}" for name in BASE_COLUMNS)
    await conn.execute(f"CREATE TABLE IF NOT EXISTS {TASK_TABLE} ({columns_sql})")

    cursor = await conn.execute(f"PRAGMA table_info({TASK_TABLE})")
    existing = {row[1] for row in await cursor.fetchall()}

    added = []
    for name, sql_type in TASK_COLUMNS.items():
        if name not in existing:
            await conn.execute(f"ALTER TABLE {TASK_TABLE} ADD COLUMN {name} {sql_type}")
            added.append(name)

    await conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TASK_TABLE}_status ON {TASK_TABLE} (status)")
    await conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TASK_TABLE}_to ON {TASK_TABLE} (to_jid)")
    await conn.commit()

    if added:
        logger.info("Added task columns", extra={"columns": added})


def get_replica_collection_schema(*, include_extended: bool = True) -> dict[str, Any]:
    """Expected PocketBase schema for the task replica collection.

    Nested task objects are stored as JSON text, like the local table.
    """
    text_fields = [
        "status",
        "to",
        "scope",
        "request_body_type",
        "sent_message_id",
        "expected_json",
        "on_timeout_json",
        "selected_json",
        "response_json",
        "action_result_json",
        "created_at",
        "expires_at",
        "updated_at",
        "attending_at",
        "completed_at",
        "expired_at",
        "cancelled_at",
        "notes",
    ]
    fields: list[dict[str, Any]] = [{"name": "task_id", "type": "text", "required": True}]
    fields.extend({"name": name, "type": "text"} for name in text_fields)
    fields.extend(
        {"name": name, "type": "number"} for name in ("created_at_ms", "expires_at_ms", "timeout_ms")
    )
    if include_extended:
        fields.append({"name": "trigger_count", "type": "number"})
        fields.append({"name": "last_triggered_at", "type": "text"})

    return {
        "name": constants.REPLICA_COLLECTION,
        "type": "base",
        "system": False,
        "listRule": None,
        "viewRule": None,
        "createRule": None,
        "updateRule": None,
        "deleteRule": None,
        "fields": fields,
        "indexes": [
            f"CREATE UNIQUE INDEX idx_{constants.REPLICA_COLLECTION}_task_id "
            f"ON {constants.REPLICA_COLLECTION} (task_id)",
        ],
    }


async def _collection_exists(*, client: httpx.AsyncClient, collection_name: str) -> bool:
    """Check if a collection exists in PocketBase."""
    try:
        response = await client.get(f"/api/collections/{collection_name}")
        return response.is_success
    except httpx.HTTPError:
        return False


async def _add_missing_fields(*, client: httpx.AsyncClient, schema: dict[str, Any]) -> None:
    """Append fields the existing collection lacks, keeping the ones it has."""
    response = await client.get(f"/api/collections/{schema['name']}")
    response.raise_for_status()
    current = response.json()

    existing = {field["name"] for field in current.get("fields", [])}
    missing = [field for field in schema["fields"] if field["name"] not in existing]
    if not missing:
        logger.info("Collection %s schema is already up to date", schema["name"])
        return

    response = await client.patch(
        f"/api/collections/{schema['name']}",
        json={"fields": [*current.get("fields", []), *missing]},
    )
    response.raise_for_status()
    logger.info("Updated collection %s: added %s", schema["name"], [field["name"] for field in missing])


async def sync_replica_schema(
    pocketbase_url: str | None = None,
    admin_email: str | None = None,
    admin_password: str | None = None,
) -> None:
    """Create or extend the PocketBase replica collection (idempotent).

    Runs as an explicit maintenance step; the service itself never alters
    the remote schema and copes with legacy collections at runtime.
    """
    logger.info("Starting PocketBase replica schema sync...")

    url = pocketbase_url or settings.pocketbase_url
    client = PocketBase(url)

    try:
        client.admins.auth_with_password(
            admin_email or settings.pocketbase_admin_email or "",
            admin_password or settings.pocketbase_admin_password or "",
        )
        logger.info("Successfully authenticated as admin")
    except ClientResponseError as e:
        logger.error(f"Failed to authenticate as admin: {e}")
        raise

    schema = get_replica_collection_schema()
    async with httpx.AsyncClient(base_url=url, timeout=constants.API_TIMEOUT_SECONDS) as http_client:
        http_client.headers["Authorization"] = f"Bearer {client.auth_store.token}"

        if not await _collection_exists(client=http_client, collection_name=schema["name"]):
            response = await http_client.post("/api/collections", json=schema)
            response.raise_for_status()
            logger.info("Created collection: %s", schema["name"])
        else:
            await _add_missing_fields(client=http_client, schema=schema)

    logger.info("PocketBase replica schema sync complete")
