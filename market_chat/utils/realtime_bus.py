import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from market_chat.config import get_settings

log = logging.getLogger("market_chat.bus")

OnMessage = Callable[[str], Awaitable[None]]
OnReconnect = Callable[[], Awaitable[None]]
OnLost = Callable[[Exception], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class _LocalSubscription:

    def __init__(self, bus: "InMemoryBus", channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = True

    def push(self, message: str) -> None:
        if self._running:
            self._queue.put_nowait(message)

    async def run(self) -> None:
        while self._running:
            message = await self._queue.get()
            if not self._running:
                break
            await self._on_message(message)

    async def cancel(self) -> None:
        self._running = False
        self._bus._remove(self)


class InMemoryBus:
    """Single-process fan-out, used when no Redis is configured."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[_LocalSubscription]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscriptions.get(channel, ())):
            sub.push(message)

    async def subscribe(
        self,
        channel: str,
        on_message: OnMessage,
        on_reconnect: Optional[OnReconnect] = None,
        on_lost: Optional[OnLost] = None,
    ) -> _LocalSubscription:
        # an in-process queue never disconnects, so the hooks are unused
        sub = _LocalSubscription(self, channel, on_message)
        self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    def _remove(self, sub: _LocalSubscription) -> None:
        subs = self._subscriptions.get(sub.channel)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            pass
        if not subs:
            del self._subscriptions[sub.channel]

    async def close(self) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                await sub.cancel()


class _RedisSubscription:

    def __init__(
        self,
        client: "redis.Redis",
        channel: str,
        on_message: OnMessage,
        on_reconnect: Optional[OnReconnect],
        on_lost: Optional[OnLost],
        reconnect_attempts: int,
        reconnect_delay: float,
    ) -> None:
        self._client = client
        self.channel = channel
        self._on_message = on_message
        self._on_reconnect = on_reconnect
        self._on_lost = on_lost
        self._attempts = reconnect_attempts
        self._delay = reconnect_delay
        self._pubsub = None
        self._running = True

    async def start(self) -> None:
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def run(self) -> None:
        failures = 0
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                failures += 1
                if failures > self._attempts:
                    log.error("Giving up on %s after %d reconnect attempts: %s", self.channel, self._attempts, exc)
                    self._running = False
                    if self._on_lost is not None:
                        await self._on_lost(exc)
                    return
                log.warning("Subscription %s dropped (%s); reconnect %d/%d", self.channel, exc, failures, self._attempts)
                await asyncio.sleep(self._delay * failures)
                if await self._resubscribe():
                    failures = 0
                continue
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def _resubscribe(self) -> bool:
        try:
            await self._pubsub.aclose()
        except RedisError:
            pass
        try:
            self._pubsub = self._client.pubsub()
            await self._pubsub.subscribe(self.channel)
        except RedisError as exc:
            log.warning("Resubscribe to %s failed: %s", self.channel, exc)
            return False
        log.info("Resubscribed to %s", self.channel)
        if self._on_reconnect is not None:
            await self._on_reconnect()
        return True

    async def cancel(self) -> None:
        self._running = False
        if self._pubsub is None:
            return
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as exc:
            log.debug("Ignoring error while closing %s: %s", self.channel, exc)


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(
        self,
        channel: str,
        on_message: OnMessage,
        on_reconnect: Optional[OnReconnect] = None,
        on_lost: Optional[OnLost] = None,
    ) -> _RedisSubscription:
        settings = get_settings()
        sub = _RedisSubscription(
            self._redis,
            channel,
            on_message,
            on_reconnect,
            on_lost,
            reconnect_attempts=settings.channel_reconnect_attempts,
            reconnect_delay=settings.channel_reconnect_delay,
        )
        await sub.start()
        return sub

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if url:
        _bus = RedisBus(url)
        log.info("Using Redis change-feed")
    else:
        _bus = InMemoryBus()
        log.info("REDIS_URL not set; using in-process change-feed")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
