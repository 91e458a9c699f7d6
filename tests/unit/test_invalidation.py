"""Unit tests for Redis pub/sub cache invalidation."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gridpilot.errors import DataUnavailable
from gridpilot.services.recommendations.invalidation import (
    InvalidationListener,
    InvalidationMessage,
    InvalidationScope,
    publish_invalidation,
)


class FakeCoordinator:
    def __init__(self, prefetch_error: Exception | None = None, gate: asyncio.Event | None = None):
        self.invalidations = []
        self.prefetched = []
        self.prefetch_error = prefetch_error
        self.gate = gate

    def invalidate(self, driver_id=None, opportunity_key=None, all=False):
        self.invalidations.append((driver_id, opportunity_key, all))
        return 0

    async def prefetch(self, driver_id):
        if self.gate is not None:
            await self.gate.wait()
        if self.prefetch_error is not None:
            raise self.prefetch_error
        self.prefetched.append(driver_id)
        return True


class FakePubSub:
    def __init__(self, messages, fail_first: bool = False):
        self.messages = messages
        self.fail_first = fail_first
        self.subscribed = []
        self.closed = 0

    async def subscribe(self, channel):
        self.subscribed.append(channel)
        if self.fail_first:
            self.fail_first = False
            raise RedisConnectionError("connection reset")

    async def listen(self):
        for message in self.messages:
            yield message
        # Park like a real subscription until cancelled
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed += 1


class FakeRedis:
    def __init__(self, pubsub: FakePubSub | None = None):
        self.published = []
        self._pubsub = pubsub

    async def publish(self, channel, data):
        self.published.append((channel, data))
        return 2

    def pubsub(self):
        return self._pubsub


class TestInvalidationMessage:
    def test_json_round_trip_keeps_scope(self):
        message = InvalidationMessage.for_driver("driver-1", prefetch=True)
        parsed = InvalidationMessage.from_json(message.to_json().encode())
        assert parsed == message
        assert parsed.scope == InvalidationScope.DRIVER

    def test_scope_requires_target(self):
        with pytest.raises(ValueError):
            InvalidationMessage(scope=InvalidationScope.DRIVER)
        with pytest.raises(ValueError):
            InvalidationMessage(scope=InvalidationScope.OPPORTUNITY)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"scope": "everything"}', "{}"])
    def test_malformed_messages_raise_value_error(self, raw):
        with pytest.raises(ValueError):
            InvalidationMessage.from_json(raw)


class TestPublish:
    def test_publish_returns_receivers(self):
        redis_client = FakeRedis()
        receivers = asyncio.run(
            publish_invalidation(redis_client, "gridpilot:invalidate", InvalidationMessage.for_all())
        )
        assert receivers == 2
        channel, data = redis_client.published[0]
        assert channel == "gridpilot:invalidate"
        assert InvalidationMessage.from_json(data).scope == InvalidationScope.ALL


class TestInvalidationListener:
    def test_handle_applies_each_scope(self):
        coordinator = FakeCoordinator()
        listener = InvalidationListener(FakeRedis(), coordinator, "chan")

        async def scenario():
            await listener.handle(InvalidationMessage.for_all().to_json())
            await listener.handle(InvalidationMessage.for_driver("d1").to_json())
            await listener.handle(InvalidationMessage.for_opportunity("1:10").to_json())

        asyncio.run(scenario())
        assert coordinator.invalidations == [
            (None, None, True),
            ("d1", None, False),
            (None, "1:10", False),
        ]
        assert coordinator.prefetched == []

    def test_prefetch_after_driver_invalidation(self):
        coordinator = FakeCoordinator()
        listener = InvalidationListener(FakeRedis(), coordinator, "chan")

        async def scenario():
            handled = await listener.handle(InvalidationMessage.for_driver("d1", prefetch=True).to_json())
            await listener.drain()
            return handled

        assert asyncio.run(scenario()) is True
        assert coordinator.prefetched == ["d1"]
        assert listener.pending_prefetches == 0

    def test_prefetch_failure_is_not_fatal(self):
        coordinator = FakeCoordinator(prefetch_error=DataUnavailable("down"))
        listener = InvalidationListener(FakeRedis(), coordinator, "chan")

        async def scenario():
            handled = await listener.handle(InvalidationMessage.for_driver("d1", prefetch=True).to_json())
            await listener.drain()
            return handled

        assert asyncio.run(scenario()) is True
        assert coordinator.invalidations == [("d1", None, False)]
        assert coordinator.prefetched == []

    def test_slow_prefetch_does_not_hold_up_later_messages(self):
        async def scenario():
            gate = asyncio.Event()
            coordinator = FakeCoordinator(gate=gate)
            listener = InvalidationListener(FakeRedis(), coordinator, "chan")

            await listener.handle(InvalidationMessage.for_driver("d1", prefetch=True).to_json())
            await listener.handle(InvalidationMessage.for_opportunity("1:10").to_json())
            pending = listener.pending_prefetches
            invalidated_before_prefetch = list(coordinator.invalidations)

            gate.set()
            await listener.drain()
            return pending, invalidated_before_prefetch, coordinator

        pending, invalidated, coordinator = asyncio.run(scenario())
        assert pending == 1
        assert invalidated == [("d1", None, False), (None, "1:10", False)]
        assert coordinator.prefetched == ["d1"]

    def test_close_cancels_pending_prefetches(self):
        async def scenario():
            coordinator = FakeCoordinator(gate=asyncio.Event())
            listener = InvalidationListener(FakeRedis(), coordinator, "chan")
            await listener.handle(InvalidationMessage.for_driver("d1", prefetch=True).to_json())
            await listener.close()
            return listener, coordinator

        listener, coordinator = asyncio.run(scenario())
        assert listener.pending_prefetches == 0
        assert coordinator.prefetched == []

    def test_malformed_message_is_ignored(self):
        coordinator = FakeCoordinator()
        listener = InvalidationListener(FakeRedis(), coordinator, "chan")
        assert asyncio.run(listener.handle(b"garbage")) is False
        assert coordinator.invalidations == []

    def test_run_resubscribes_after_redis_error(self):
        pubsub = FakePubSub(
            [
                {"type": "subscribe", "data": 1},
                {"type": "message", "data": InvalidationMessage.for_driver("d1").to_json()},
            ],
            fail_first=True,
        )
        coordinator = FakeCoordinator()
        listener = InvalidationListener(FakeRedis(pubsub), coordinator, "chan", reconnect_delay=0)

        async def scenario():
            task = asyncio.create_task(listener.run())
            for _ in range(20):
                await asyncio.sleep(0)
                if coordinator.invalidations:
                    break
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        asyncio.run(scenario())
        assert pubsub.subscribed == ["chan", "chan"]
        assert coordinator.invalidations == [("d1", None, False)]
        assert pubsub.closed == 2
