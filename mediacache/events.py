"""Pub/sub event fan-out for server-sent events.

Events are fire-and-forget: nothing is persisted, and a subscriber that
connects after a publish never sees it. Brokers have an explicit lifecycle
(``open``/``close``) and are passed to whoever needs them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from mediacache.schemas import CacheCompletedEvent, OcrCompletedEvent
from mediacache.settings import settings

logger = logging.getLogger(__name__)


class Subscription(ABC):
    """One subscriber's view of a channel."""

    def __init__(self, channel: str):
        self.channel = channel

    @abstractmethod
    async def get_message(self, timeout: float) -> Optional[str]:
        """Next message on the channel, or None if nothing arrived within ``timeout`` seconds."""

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe and release the connection."""


class EventBroker(ABC):
    """Publish/subscribe transport."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of subscribers that received it."""

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Open a dedicated subscription to ``channel``."""


class LocalSubscription(Subscription):
    def __init__(self, broker: "LocalEventBroker", channel: str):
        super().__init__(channel)
        self.broker = broker
        self.messages: asyncio.Queue = asyncio.Queue()

    async def get_message(self, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.messages.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self.broker._subscribers.get(self.channel, set()).discard(self)


class LocalEventBroker(EventBroker):
    """In-process broker: single-process development and tests."""

    def __init__(self):
        self._subscribers: Dict[str, Set[LocalSubscription]] = {}

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, message: str) -> int:
        receivers = list(self._subscribers.get(channel, ()))
        for subscription in receivers:
            subscription.messages.put_nowait(message)
        return len(receivers)

    async def subscribe(self, channel: str) -> Subscription:
        subscription = LocalSubscription(self, channel)
        self._subscribers.setdefault(channel, set()).add(subscription)
        return subscription

    async def close(self) -> None:
        self._subscribers.clear()


class RedisSubscription(Subscription):
    def __init__(self, client: aioredis.Redis, pubsub, channel: str):
        super().__init__(channel)
        self.client = client
        self.pubsub = pubsub

    async def get_message(self, timeout: float) -> Optional[str]:
        message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if message is None or message.get("type") != "message":
            return None
        return message["data"]

    async def close(self) -> None:
        try:
            await self.pubsub.unsubscribe(self.channel)
        except RedisError as e:
            logger.warning("Failed to unsubscribe from %s: %s", self.channel, e)
        finally:
            await self.pubsub.aclose()
            await self.client.aclose()


class RedisEventBroker(EventBroker):
    """Redis pub/sub broker.

    One publisher connection is shared by every publish call. Subscribing
    puts a connection into a blocking mode, so each subscription opens its
    own dedicated client.
    """

    def __init__(self, url: str = None):
        self.url = url or settings.REDIS_URL
        self._publisher: Optional[aioredis.Redis] = None

    def _client(self) -> aioredis.Redis:
        return aioredis.from_url(self.url, decode_responses=True, health_check_interval=30)

    async def open(self) -> None:
        if self._publisher is None:
            self._publisher = self._client()
            await self._publisher.ping()
            logger.info("Redis publisher connected to %s", self.url)

    async def close(self) -> None:
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None

    async def publish(self, channel: str, message: str) -> int:
        if self._publisher is None:
            await self.open()
        return await self._publisher.publish(channel, message)

    async def subscribe(self, channel: str) -> Subscription:
        client = self._client()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError:
            await pubsub.aclose()
            await client.aclose()
            raise
        logger.info("Subscribed to channel %s", channel)
        return RedisSubscription(client, pubsub, channel)


def create_event_broker() -> EventBroker:
    """Factory function to get an event broker based on settings."""
    if settings.EVENT_BROKER == "redis":
        return RedisEventBroker()
    elif settings.EVENT_BROKER == "local":
        return LocalEventBroker()
    else:
        raise ValueError(f"Unknown event broker: {settings.EVENT_BROKER}")


def channel_name(name: str) -> str:
    return f"{settings.SSE_CHANNEL_PREFIX}:{name}"


class EventEmitter:
    """Publishes completion events. Publish failures are logged, never raised."""

    def __init__(self, broker: EventBroker):
        self.broker = broker

    async def emit(self, channel: str, event: Union[OcrCompletedEvent, CacheCompletedEvent]) -> int:
        try:
            receivers = await self.broker.publish(channel_name(channel), event.model_dump_json(by_alias=True))
        except (RedisError, OSError) as e:
            logger.error("Failed to publish %s event on %s: %s", event.type, channel, e)
            return 0
        logger.debug("Published %s event on %s to %d subscriber(s)", event.type, channel, receivers)
        return receivers

    async def emit_ocr_completed(self, post_id: str, success: bool) -> int:
        return await self.emit("ocr", OcrCompletedEvent(post_id=post_id, success=success))

    async def emit_cache_completed(self, cache_asset_id: str, success: bool) -> int:
        return await self.emit("cache", CacheCompletedEvent(cache_asset_id=cache_asset_id, success=success))
