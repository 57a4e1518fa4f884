"""Sequential delivery of inbound message batches."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any


logger = logging.getLogger(__name__)


class InboundDispatcher:
    """Queue of messages-upsert events drained by a single consumer.

    Batches are delivered one at a time, in arrival order, so handlers never
    process two inbound batches concurrently.
    """

    def __init__(self, deliver: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        self._deliver = deliver
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if not self.running:
            self._consumer = asyncio.create_task(self._consume())
            logger.info("Inbound dispatcher started")

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None
        logger.info("Inbound dispatcher stopped")

    def enqueue(self, event: dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    async def join(self) -> None:
        """Wait until every queued batch has been delivered."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Inbound batch delivery failed")
            finally:
                self._queue.task_done()
