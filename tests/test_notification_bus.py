"""NotificationBus fan-out and the Redis relay's dispatch path."""

import asyncio
import json

import pytest

from genrelay.services.notification_bus import EVENT_GENERATION_COMPLETED, NotificationBus
from genrelay.services.redis_relay import CHANNEL_PREFIX, RedisRelay


def test_publish_without_subscribers_is_noop():
    bus = NotificationBus()
    assert bus.publish("nobody", EVENT_GENERATION_COMPLETED, {"record_id": 1}) == 0


@pytest.mark.asyncio
async def test_every_subscription_of_a_client_receives():
    bus = NotificationBus()
    a = bus.subscribe("c1")
    b = bus.subscribe("c1")
    other = bus.subscribe("c2")

    assert bus.publish("c1", EVENT_GENERATION_COMPLETED, {"record_id": 7}) == 2

    note = await asyncio.wait_for(a.get(), 1)
    assert note.event == EVENT_GENERATION_COMPLETED
    assert note.data == {"record_id": 7}
    assert (await asyncio.wait_for(b.get(), 1)).data == {"record_id": 7}
    assert other.mailbox.empty()


def test_full_mailbox_drops_instead_of_blocking(caplog):
    bus = NotificationBus(mailbox_size=2)
    slow = bus.subscribe("c1")
    bus.subscribe("c1")

    delivered = [bus.publish("c1", "e", {"n": n}) for n in range(3)]

    assert delivered == [2, 2, 0]
    assert slow.mailbox.qsize() == 2
    assert [slow.mailbox.get_nowait().data["n"] for _ in range(2)] == [0, 1]
    assert "slow consumer" in caplog.text


def test_unsubscribe_removes_only_that_subscription():
    bus = NotificationBus()
    a = bus.subscribe("c1")
    b = bus.subscribe("c1")

    bus.unsubscribe(a)
    assert bus.subscriber_count("c1") == 1
    bus.unsubscribe(b)
    bus.unsubscribe(b)
    assert bus.subscriber_count("c1") == 0


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_relay_publish_uses_client_channel():
    redis = FakeRedis()
    relay = RedisRelay(NotificationBus(), "redis://unused", client=redis)

    assert await relay.publish("c1", EVENT_GENERATION_COMPLETED, {"record_id": 3, "status": "success"})

    [(channel, message)] = redis.published
    assert channel == f"{CHANNEL_PREFIX}c1"
    assert json.loads(message) == {"event": EVENT_GENERATION_COMPLETED, "data": {"record_id": 3, "status": "success"}}


@pytest.mark.asyncio
async def test_relay_publish_failure_is_swallowed(caplog):
    relay = RedisRelay(NotificationBus(), "redis://unused", client=FakeRedis(fail=True))
    assert await relay.publish("c1", EVENT_GENERATION_COMPLETED, {"record_id": 3}) is False
    assert "Failed to publish" in caplog.text


def test_relay_dispatch_feeds_local_bus():
    bus = NotificationBus()
    sub = bus.subscribe("c1")
    relay = RedisRelay(bus, "redis://unused", client=FakeRedis())

    relay.dispatch(f"{CHANNEL_PREFIX}c1".encode(), json.dumps({"event": "generation_completed", "data": {"record_id": 9}}))
    relay.dispatch("other:channel", json.dumps({"event": "x"}))
    relay.dispatch(f"{CHANNEL_PREFIX}c1", "not json")

    assert sub.mailbox.qsize() == 1
    assert sub.mailbox.get_nowait().data == {"record_id": 9}


class FakePubSub:
    def __init__(self, messages=(), fail=False, hold=False):
        self.messages = list(messages)
        self.fail = fail
        self.hold = hold
        self.closed = False

    async def psubscribe(self, pattern):
        if self.fail:
            raise ConnectionError("Error 111 connecting to redis")

    async def listen(self):
        for message in self.messages:
            yield message
        if self.hold:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def _pmessage(client_id, data):
    return {
        "type": "pmessage",
        "channel": f"{CHANNEL_PREFIX}{client_id}".encode(),
        "data": json.dumps({"event": EVENT_GENERATION_COMPLETED, "data": data}),
    }


@pytest.mark.asyncio
async def test_relay_listen_relays_pattern_messages():
    pubsub = FakePubSub([
        {"type": "psubscribe", "channel": f"{CHANNEL_PREFIX}*", "data": 1},
        _pmessage("c1", {"record_id": 4, "status": "failure"}),
    ])
    redis = FakeRedis()
    redis.pubsub = lambda: pubsub
    bus = NotificationBus()
    sub = bus.subscribe("c1")
    relay = RedisRelay(bus, "redis://unused", client=redis)

    await relay.listen()

    assert sub.mailbox.get_nowait().data == {"record_id": 4, "status": "failure"}
    assert sub.mailbox.empty()
    assert pubsub.closed
    assert relay.listening is False


@pytest.mark.asyncio
async def test_relay_run_reconnects_after_connection_errors():
    down = FakePubSub(fail=True)
    up = FakePubSub([_pmessage("c1", {"record_id": 5, "status": "success"})], hold=True)
    attempts = [down, down, up]
    redis = FakeRedis()
    redis.pubsub = lambda: attempts.pop(0)
    bus = NotificationBus()
    sub = bus.subscribe("c1")
    relay = RedisRelay(bus, "redis://unused", client=redis)

    task = asyncio.create_task(relay.run(retry_delay=0.001, max_delay=0.002))
    note = await asyncio.wait_for(sub.get(), 2)
    assert relay.listening
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert note.data == {"record_id": 5, "status": "success"}
    assert attempts == []
    assert down.closed and up.closed
    assert relay.connections == 1
    assert relay.listening is False
