# tests/modules/chat/test_broadcast_channel.py
import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from secretaria.core.exceptions import BroadcastTransientError
from secretaria.modules.chat.broadcast import BroadcastChannel, BroadcastHub, ChannelState

pytestmark = pytest.mark.asyncio

async def _received_within(queue: asyncio.Queue, timeout: float = 2.0):
    return await asyncio.wait_for(queue.get(), timeout)

async def test_topic_naming(hub: BroadcastHub):
    assert hub.topic_for("abc") == "chat_abc"
    channel = hub.open("abc")
    assert channel.topic == "chat_abc"
    assert channel.event == "ai-response"
    assert channel.state == ChannelState.CLOSED

async def test_send_requires_active_subscription(hub: BroadcastHub):
    channel = hub.open("s1")
    with pytest.raises(BroadcastTransientError):
        await channel.send({"message": "too early"})
    await channel.close()

async def test_subscriber_receives_messages_sent_after_active(hub: BroadcastHub):
    received: asyncio.Queue = asyncio.Queue()
    async with hub.open("s1") as listener, hub.open("s1") as publisher:
        await listener.subscribe(received.put_nowait)
        await publisher.subscribe()
        assert await listener.wait_active(1.0)
        assert await publisher.wait_active(1.0)

        receivers = await publisher.send({"message": "Hi there"})
        envelope = await _received_within(received)

    assert receivers == 1
    assert envelope["type"] == "broadcast"
    assert envelope["event"] == "ai-response"
    assert envelope["payload"] == {"message": "Hi there"}

async def test_sender_does_not_receive_its_own_message(hub: BroadcastHub):
    own: asyncio.Queue = asyncio.Queue()
    async with hub.open("s1") as channel:
        await channel.subscribe(own.put_nowait)
        assert await channel.wait_active(1.0)
        assert await channel.send({"message": "eco"}) == 0
        with pytest.raises(asyncio.TimeoutError):
            await _received_within(own, timeout=0.3)

async def test_no_backlog_for_late_subscriber(hub: BroadcastHub):
    received: asyncio.Queue = asyncio.Queue()
    async with hub.open("s1") as publisher:
        await publisher.subscribe()
        assert await publisher.wait_active(1.0)
        assert await publisher.send({"message": "ninguém ouvindo"}) == 0

        async with hub.open("s1") as late:
            await late.subscribe(received.put_nowait)
            assert await late.wait_active(1.0)
            with pytest.raises(asyncio.TimeoutError):
                await _received_within(received, timeout=0.3)

async def test_other_events_and_garbage_are_ignored(hub: BroadcastHub, redis_client):
    received: asyncio.Queue = asyncio.Queue()
    async with hub.open("s1") as listener:
        await listener.subscribe(received.put_nowait)
        assert await listener.wait_active(1.0)
        await redis_client.publish("chat_s1", "not json")
        await redis_client.publish("chat_s1", json.dumps({"type": "broadcast", "event": "typing", "payload": {}}))
        await redis_client.publish("chat_s1", json.dumps({"type": "broadcast", "event": "ai-response", "payload": {"message": "ok"}}))
        envelope = await _received_within(received)
    assert envelope["payload"]["message"] == "ok"
    assert received.empty()

async def test_handler_errors_do_not_kill_listener(hub: BroadcastHub, redis_client):
    calls = []

    async def flaky(envelope):
        calls.append(envelope["payload"]["message"])
        if len(calls) == 1:
            raise RuntimeError("boom")

    async with hub.open("s1") as listener:
        await listener.subscribe(flaky)
        assert await listener.wait_active(1.0)
        for text in ("first", "second"):
            await redis_client.publish("chat_s1", json.dumps({"event": "ai-response", "payload": {"message": text}}))
        for _ in range(50):
            if len(calls) == 2:
                break
            await asyncio.sleep(0.02)
        assert listener.state == ChannelState.SUBSCRIBED
    assert calls == ["first", "second"]

async def test_without_redis_channel_errors_instead_of_raising():
    channel = BroadcastHub(None).open("s1")
    await channel.subscribe()
    assert channel.state == ChannelState.CHANNEL_ERROR
    assert await channel.wait_active(0.1) is False
    with pytest.raises(BroadcastTransientError):
        await channel.send({"message": "x"})

async def test_subscribe_failure_marks_channel_error():
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock(side_effect=ConnectionError("redis down"))
    redis_client = MagicMock()
    redis_client.pubsub.return_value = pubsub

    channel = BroadcastChannel(redis_client, "chat_s1", "ai-response")
    await channel.subscribe()
    assert channel.state == ChannelState.CHANNEL_ERROR
    assert await channel.wait_active(0.1) is False

async def test_wait_active_times_out_when_never_confirmed():
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()

    async def never(**kwargs):
        await asyncio.sleep(kwargs.get("timeout") or 0.05)
        return None

    pubsub.get_message = never
    redis_client = MagicMock()
    redis_client.pubsub.return_value = pubsub

    channel = BroadcastChannel(redis_client, "chat_s1", "ai-response", read_timeout=0.05)
    await channel.subscribe()
    assert await channel.wait_active(0.2) is False
    assert channel.state == ChannelState.TIMED_OUT
    await channel.close()
    assert channel.state == ChannelState.CLOSED

async def test_close_is_idempotent(hub: BroadcastHub):
    channel = hub.open("s1")
    await channel.subscribe()
    await channel.wait_active(1.0)
    await channel.close()
    await channel.close()
    assert channel.state == ChannelState.CLOSED
    with pytest.raises(BroadcastTransientError):
        await channel.subscribe()

class SwallowingPubSub:
    """get_message que engole o cancelamento e devolve vazio, como um timeout interno do cliente."""

    def __init__(self, hold: float, stubborn: bool = False):
        self.hold = hold
        self.stubborn = stubborn
        self.confirmed = False
        self.reads = 0

    async def subscribe(self, *topics):
        pass

    async def unsubscribe(self, *topics):
        pass

    async def aclose(self):
        pass

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        if not self.confirmed:
            self.confirmed = True
            return {"type": "subscribe", "channel": "chat_s1", "data": 1}
        self.reads += 1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.hold
        while True:
            try:
                await asyncio.sleep(max(0, deadline - loop.time()))
                return None
            except asyncio.CancelledError:
                if not self.stubborn:
                    return None

def _channel_over(pubsub, read_timeout: float) -> BroadcastChannel:
    redis_client = MagicMock()
    redis_client.pubsub.return_value = pubsub
    return BroadcastChannel(redis_client, "chat_s1", "ai-response", read_timeout=read_timeout)

async def test_close_stops_listener_that_swallows_cancellation():
    pubsub = SwallowingPubSub(hold=30)
    channel = _channel_over(pubsub, read_timeout=0.5)
    await channel.subscribe(lambda envelope: None)
    assert await channel.wait_active(1.0)
    await asyncio.sleep(0.05)  # listener parado dentro do get_message

    await asyncio.wait_for(channel.close(), 2.0)
    assert channel.state == ChannelState.CLOSED
    assert pubsub.reads == 1

async def test_close_is_bounded_when_listener_never_lets_go():
    pubsub = SwallowingPubSub(hold=1.0, stubborn=True)
    channel = _channel_over(pubsub, read_timeout=0.1)
    await channel.subscribe(lambda envelope: None)
    assert await channel.wait_active(1.0)
    listener = channel._listener
    await asyncio.sleep(0.05)

    started = asyncio.get_running_loop().time()
    await channel.close()
    assert asyncio.get_running_loop().time() - started < 0.8
    assert channel.state == ChannelState.CLOSED
    # Depois de devolver o get_message, a task de escuta sai sozinha
    await asyncio.wait({listener}, timeout=2.0)
    assert listener.done()

async def test_close_propagates_caller_cancellation():
    pubsub = SwallowingPubSub(hold=1.0, stubborn=True)
    channel = _channel_over(pubsub, read_timeout=5.0)
    await channel.subscribe(lambda envelope: None)
    assert await channel.wait_active(1.0)
    listener = channel._listener
    await asyncio.sleep(0.05)

    closing = asyncio.create_task(channel.close())
    await asyncio.sleep(0.05)
    closing.cancel()
    with pytest.raises(asyncio.CancelledError):
        await closing
    await asyncio.wait({listener}, timeout=2.0)
    assert listener.done()

async def test_publish_only_channel_has_no_listener_task(hub: BroadcastHub):
    async with hub.open("s1") as publisher:
        await publisher.subscribe()
        assert await publisher.wait_active(1.0)
        assert publisher._listener is None
        assert await publisher.send({"message": "Hi"}) == 0
