"""Tests for sequential inbound batch delivery."""

import asyncio

import pytest

from replytrack.services.inbound_dispatcher import InboundDispatcher


@pytest.mark.unit
async def test_batches_are_delivered_one_at_a_time_in_order() -> None:
    delivered: list[int] = []
    active = 0
    overlap = False

    async def deliver(event: dict) -> None:
        nonlocal active, overlap
        active += 1
        overlap = overlap or active > 1
        await asyncio.sleep(0)
        delivered.append(event["n"])
        active -= 1

    dispatcher = InboundDispatcher(deliver)
    dispatcher.start()
    for n in range(5):
        dispatcher.enqueue({"n": n})
    await dispatcher.join()
    await dispatcher.stop()

    assert delivered == [0, 1, 2, 3, 4]
    assert overlap is False


@pytest.mark.unit
async def test_failed_batch_does_not_stop_the_consumer() -> None:
    delivered: list[int] = []

    async def deliver(event: dict) -> None:
        if event["n"] == 0:
            raise RuntimeError("boom")
        delivered.append(event["n"])

    dispatcher = InboundDispatcher(deliver)
    dispatcher.start()
    dispatcher.enqueue({"n": 0})
    dispatcher.enqueue({"n": 1})
    await dispatcher.join()

    assert dispatcher.running is True
    assert delivered == [1]
    await dispatcher.stop()
    assert dispatcher.running is False


@pytest.mark.unit
async def test_stop_without_start_is_noop() -> None:
    async def deliver(event: dict) -> None:
        pass

    await InboundDispatcher(deliver).stop()
