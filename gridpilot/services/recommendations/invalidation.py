"""Cross-process cache invalidation over Redis pub/sub.

Sync workers publish a message after persisting new data; each API
process runs a listener that applies it to its own coordinator.
"""

import asyncio
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from gridpilot.errors import GridPilotError

logger = structlog.get_logger(__name__)


class InvalidationScope(str, Enum):
    DRIVER = "driver"
    OPPORTUNITY = "opportunity"
    ALL = "all"


@dataclass(frozen=True)
class InvalidationMessage:
    scope: InvalidationScope
    driver_id: str | None = None
    opportunity_key: str | None = None
    prefetch: bool = False

    def __post_init__(self):
        if self.scope == InvalidationScope.DRIVER and not self.driver_id:
            raise ValueError("driver invalidation needs a driver_id")
        if self.scope == InvalidationScope.OPPORTUNITY and not self.opportunity_key:
            raise ValueError("opportunity invalidation needs an opportunity_key")

    @classmethod
    def for_driver(cls, driver_id: str, prefetch: bool = False) -> "InvalidationMessage":
        return cls(scope=InvalidationScope.DRIVER, driver_id=driver_id, prefetch=prefetch)

    @classmethod
    def for_opportunity(cls, opportunity_key: str) -> "InvalidationMessage":
        return cls(scope=InvalidationScope.OPPORTUNITY, opportunity_key=opportunity_key)

    @classmethod
    def for_all(cls) -> "InvalidationMessage":
        return cls(scope=InvalidationScope.ALL)

    def to_json(self) -> str:
        data = asdict(self)
        data["scope"] = self.scope.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "InvalidationMessage":
        """
        Parse a published message.

        Raises:
            ValueError: malformed JSON or an unknown scope
        """
        if isinstance(raw, bytes):
            raw = raw.decode()
        data: dict[str, Any] = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("invalidation message must be a JSON object")
        return cls(
            scope=InvalidationScope(data.get("scope")),
            driver_id=data.get("driver_id"),
            opportunity_key=data.get("opportunity_key"),
            prefetch=bool(data.get("prefetch", False)),
        )


async def publish_invalidation(
    redis_client: redis.Redis, channel: str, message: InvalidationMessage
) -> int:
    """Publish a message; returns the number of subscribed processes."""
    receivers = await redis_client.publish(channel, message.to_json())
    logger.info(
        "invalidation_published",
        channel=channel,
        scope=message.scope.value,
        driver_id=message.driver_id,
        opportunity_key=message.opportunity_key,
        receivers=receivers,
    )
    return receivers


class InvalidationListener:
    """
    Applies published invalidations to a coordinator.

    Args:
        redis_client: Async Redis client
        coordinator: RecommendationCoordinator of this process
        channel: Pub/sub channel name
        reconnect_delay: Seconds to wait after a Redis error before resubscribing
    """

    def __init__(self, redis_client: redis.Redis, coordinator, channel: str, reconnect_delay: float = 5.0):
        self.redis = redis_client
        self.coordinator = coordinator
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self._prefetches: set[asyncio.Task] = set()

    async def handle(self, raw: str | bytes) -> bool:
        """
        Apply one raw message. Returns False if it was malformed.

        A requested prefetch runs as its own task so the next message is not
        held up behind a full computation.
        """
        try:
            message = InvalidationMessage.from_json(raw)
        except ValueError as e:
            logger.warning("invalidation_message_invalid", error=str(e))
            return False

        if message.scope == InvalidationScope.ALL:
            self.coordinator.invalidate(all=True)
        elif message.scope == InvalidationScope.DRIVER:
            self.coordinator.invalidate(driver_id=message.driver_id)
        else:
            self.coordinator.invalidate(opportunity_key=message.opportunity_key)

        if message.prefetch and message.driver_id:
            task = asyncio.create_task(self._prefetch(message.driver_id))
            self._prefetches.add(task)
            task.add_done_callback(self._prefetches.discard)
        return True

    async def _prefetch(self, driver_id: str) -> None:
        try:
            await self.coordinator.prefetch(driver_id)
        except GridPilotError as e:
            logger.warning("prefetch_failed", driver_id=driver_id, error=str(e))

    @property
    def pending_prefetches(self) -> int:
        return len(self._prefetches)

    async def drain(self) -> None:
        """Wait for every prefetch started so far."""
        await asyncio.gather(*list(self._prefetches), return_exceptions=True)

    async def close(self) -> None:
        """Cancel prefetches still running."""
        tasks = list(self._prefetches)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self) -> None:
        """Subscribe and apply messages until cancelled."""
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("invalidation_listener_subscribed", channel=self.channel)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self.handle(message["data"])
            except RedisError as e:
                logger.warning("invalidation_listener_error", channel=self.channel, error=str(e))
                await asyncio.sleep(self.reconnect_delay)
            finally:
                await pubsub.aclose()
