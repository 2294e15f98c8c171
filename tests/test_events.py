from __future__ import annotations

import asyncio

import pytest

from refinery.refinement.runtime.events import SessionEventChannel


def test_emit_orders_events_and_calls_callback():
    seen = []

    async def callback(event):
        seen.append(event.type)

    channel = SessionEventChannel("s1", callback=callback)

    async def run():
        await channel.emit("state-change", {"from": "IDLE", "to": "DRAFTING"})
        await channel.emit("progress", "working")

    asyncio.run(run())

    assert [event.sequence for event in channel.history] == [1, 2]
    assert seen == ["state-change", "progress"]
    assert channel.events_of("progress")[0].payload == "working"


def test_unknown_event_type_is_rejected():
    channel = SessionEventChannel("s1")
    with pytest.raises(ValueError):
        asyncio.run(channel.emit("shout", "hi"))


def test_late_subscriber_replays_history_until_close():
    channel = SessionEventChannel("s1")

    async def run():
        await channel.emit("progress", "one")
        received = []

        async def consume():
            async for event in channel.subscribe():
                received.append(event.payload)

        consumer = asyncio.ensure_future(consume())
        await asyncio.sleep(0)
        await channel.emit("progress", "two")
        channel.close()
        await consumer
        return received

    assert asyncio.run(run()) == ["one", "two"]
    assert channel.closed is True


def test_subscribe_after_close_drains_history():
    channel = SessionEventChannel("s1")

    async def run():
        await channel.emit("error", "boom")
        channel.close()
        return [event.payload async for event in channel.subscribe()]

    assert asyncio.run(run()) == ["boom"]
