import asyncio
import json

import pytest

from threadloom.events import TextEvent, WarnEvent
from threadloom.sessions.channel import EventChannel
from threadloom.sessions.transport import SSETransport, TransportClosedError


@pytest.mark.asyncio
async def test_every_subscriber_receives_events_in_order():
    channel = EventChannel("demo:thread")
    first, second = [], []
    channel.subscribe(first.append)

    async def slow(event):
        await asyncio.sleep(0)
        second.append(event)

    channel.subscribe(slow)
    events = [TextEvent(text=str(index)) for index in range(5)]
    for event in events:
        channel.publish(event)
    await channel.drain()

    assert first == events
    assert second == events
    channel.close()
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_lagging_subscriber_drops_oldest_events():
    channel = EventChannel("demo:thread")
    seen = []
    subscription = channel.subscribe(seen.append, maxsize=2)

    for index in range(4):
        channel.publish(TextEvent(text=str(index)))
    await subscription.drain()

    assert [event.text for event in seen] == ["2", "3"]
    assert subscription.dropped == 2


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_delivery():
    channel = EventChannel("demo:thread")
    seen = []

    def handler(event):
        if event.text == "bad":
            raise ValueError("cannot handle")
        seen.append(event.text)

    channel.subscribe(handler)
    for text in ("good", "bad", "after"):
        channel.publish(TextEvent(text=text))
    await channel.drain()
    assert seen == ["good", "after"]


@pytest.mark.asyncio
async def test_sse_transport_streams_formatted_events_until_closed():
    transport = SSETransport()
    await transport.send(WarnEvent(warning="careful"))
    await transport.close()

    chunks = [chunk async for chunk in transport.stream()]

    assert len(chunks) == 1
    header, data, *_ = chunks[0].split("\n")
    assert header == "event: warn"
    assert json.loads(data.removeprefix("data: "))["warning"] == "careful"
    with pytest.raises(TransportClosedError):
        await transport.send(WarnEvent(warning="late"))


@pytest.mark.asyncio
async def test_unsubscribing_releases_pending_drain():
    channel = EventChannel("demo:thread")
    release = asyncio.Event()
    seen = []

    async def stuck(event):
        await release.wait()
        seen.append(event)

    subscription = channel.subscribe(stuck)
    for index in range(3):
        channel.publish(TextEvent(text=str(index)))
    drain = asyncio.create_task(channel.drain())
    await asyncio.sleep(0.01)
    assert not drain.done()

    subscription.unsubscribe()
    await asyncio.wait_for(drain, timeout=1)

    assert seen == []
    await asyncio.sleep(0)
    assert subscription.active is False
    assert channel.subscriber_count == 0
