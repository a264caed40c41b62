"""Change-feed doubles built on the real in-process bus."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from market_chat.utils.realtime_bus import InMemoryBus


class FlakyBus(InMemoryBus):
    """InMemoryBus that can go offline, reconnect, or be lost for good.

    While offline, published events are dropped, like a real pub/sub drop.
    ``reconnect()`` fires the subscribers' reconnect hooks. ``lose()`` fires
    their lost hooks.
    """

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self.dropped: List[Tuple[str, str]] = []
        self.published: List[Tuple[str, str]] = []
        self._hooks: Dict[object, tuple] = {}

    async def publish(self, channel: str, message: str) -> None:
        if not self.online:
            self.dropped.append((channel, message))
            return
        self.published.append((channel, message))
        await super().publish(channel, message)

    async def subscribe(self, channel, on_message, on_reconnect=None, on_lost=None):
        sub = await super().subscribe(channel, on_message)
        self._hooks[sub] = (on_reconnect, on_lost)
        return sub

    async def redeliver(self, channel: str, message: str) -> None:
        """Push an event again, as an at-least-once transport may."""
        await super().publish(channel, message)

    async def reconnect(self) -> None:
        self.online = True
        for on_reconnect, _ in list(self._hooks.values()):
            if on_reconnect is not None:
                await on_reconnect()

    async def lose(self, exc: Optional[Exception] = None) -> None:
        for _, on_lost in list(self._hooks.values()):
            if on_lost is not None:
                await on_lost(exc or ConnectionError("change-feed gone"))


class BrokenBus(InMemoryBus):
    """Every publish fails."""

    async def publish(self, channel: str, message: str) -> None:
        raise ConnectionError("publish refused")
