#!/usr/bin/env python3
"""Create or extend the PocketBase replica collection.

Usage:
    python scripts/sync_replica_schema.py
"""

import asyncio
import logging

from replytrack.core.config import settings
from replytrack.core.schema import sync_replica_schema


logging.basicConfig(level=logging.INFO, format="%(message)s")


async def main() -> None:
    # Ensure credentials are present
    admin_email = settings.require_credential("pocketbase_admin_email", "PocketBase Admin Email")
    admin_password = settings.require_credential("pocketbase_admin_password", "PocketBase Admin Password")

    await sync_replica_schema(
        admin_email=admin_email,
        admin_password=admin_password,
    )


if __name__ == "__main__":
    asyncio.run(main())
