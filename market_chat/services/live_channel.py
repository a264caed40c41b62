import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from market_chat.config import get_settings
from market_chat.exceptions import ChannelLost
from market_chat.schemas.messaging import decode_message
from market_chat.utils.realtime_bus import conversation_channel

log = logging.getLogger("market_chat.live_channel")

MessageCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
LostCallback = Callable[[ChannelLost], Union[None, Awaitable[None]]]

# queue markers
_RESYNC = object()
_LOST = object()
_RECHECK = object()


class ChannelHandle:
    """One live subscription to a conversation's appended messages."""

    def __init__(self, conversation_id: str, on_message: MessageCallback, on_lost: Optional[LostCallback], last_seq: int) -> None:
        self.conversation_id = conversation_id
        self.last_seq = last_seq
        # highest seq known to be reserved; above last_seq means a gap
        self.known_seq = last_seq
        self._on_message = on_message
        self._on_lost = on_lost
        self._queue: asyncio.Queue = asyncio.Queue()
        # events that arrived ahead of a gap, by seq
        self._ahead: Dict[int, Dict[str, Any]] = {}
        self._failures = 0
        self._closed = False
        self._subscription = None
        self._reader: Optional[asyncio.Task] = None
        self._dispatcher: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def waiting(self) -> bool:
        return self.known_seq > self.last_seq

    async def _enqueue(self, data: str) -> None:
        if not self._closed:
            self._queue.put_nowait(data)

    async def _request_resync(self) -> None:
        if not self._closed:
            self._queue.put_nowait(_RESYNC)

    async def _report_lost(self, exc: Exception) -> None:
        if not self._closed:
            self._queue.put_nowait(_LOST)


class LiveUpdateChannel:
    """Pushes newly appended messages to subscribers, in append order per conversation.

    Each handle has its own dispatcher task draining a queue fed by the bus, so
    callbacks for one handle never overlap and always see ascending ``seq``.
    Events at or below the last delivered ``seq`` are dropped. An event past
    ``last_seq + 1`` is held back while the log is re-read, every
    ``gap_recheck`` seconds, until the missing seqs are stored or the log
    reports them abandoned. A bus reconnect also triggers a re-read. Failed
    re-reads are retried with backoff; when retries run out the handle is
    closed and ``ChannelLost`` is reported.
    """

    def __init__(self, bus, message_log) -> None:
        settings = get_settings()
        self._bus = bus
        self._log = message_log
        self._handles: Set[ChannelHandle] = set()
        self.retry_attempts = settings.channel_reconnect_attempts
        self.retry_delay = settings.channel_reconnect_delay
        self.gap_recheck = settings.channel_gap_recheck

    async def subscribe(
        self,
        conversation_id: str,
        on_message: MessageCallback,
        after_seq: Optional[int] = None,
        on_lost: Optional[LostCallback] = None,
    ) -> ChannelHandle:
        handle = ChannelHandle(conversation_id, on_message, on_lost, after_seq or 0)
        handle._subscription = await self._bus.subscribe(
            conversation_channel(conversation_id),
            handle._enqueue,
            on_reconnect=handle._request_resync,
            on_lost=handle._report_lost,
        )
        try:
            if after_seq is None:
                upto, reserved = await self._log.bounds(conversation_id)
                handle.last_seq = upto
                handle.known_seq = reserved
                if reserved > upto:
                    # appends in flight right now still belong to this handle
                    handle._queue.put_nowait(_RESYNC)
            else:
                # anything appended between the caller's read and this subscription
                handle._queue.put_nowait(_RESYNC)
        except Exception:
            await handle._subscription.cancel()
            raise

        handle._reader = asyncio.create_task(handle._subscription.run())
        handle._dispatcher = asyncio.create_task(self._dispatch(handle))
        self._handles.add(handle)
        log.debug("Subscribed to %s from seq %d", conversation_id, handle.last_seq)
        return handle

    async def unsubscribe(self, handle: ChannelHandle) -> None:
        """Stop delivery. No callback of ``handle`` starts after this returns."""
        if handle._closed:
            return
        handle._closed = True
        self._handles.discard(handle)
        if handle._subscription is not None:
            await handle._subscription.cancel()
        current = asyncio.current_task()
        for task in (handle._reader, handle._dispatcher):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.debug("Unsubscribed from %s at seq %d", handle.conversation_id, handle.last_seq)

    async def close_all(self) -> None:
        for handle in list(self._handles):
            await self.unsubscribe(handle)

    @property
    def open_handles(self) -> int:
        return len(self._handles)

    async def _dispatch(self, handle: ChannelHandle) -> None:
        while not handle._closed:
            item = await self._next_item(handle)
            if handle._closed:
                return
            if item is _LOST:
                await self._lose(handle)
                return
            try:
                if item is _RESYNC or item is _RECHECK:
                    await self._catch_up(handle)
                else:
                    self._hold(handle, decode_message(item))
                await self._drain(handle)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not await self._retry(handle, exc):
                    return
            else:
                handle._failures = 0

    async def _next_item(self, handle: ChannelHandle):
        if not handle.waiting:
            return await handle._queue.get()
        try:
            return await asyncio.wait_for(handle._queue.get(), self.gap_recheck)
        except asyncio.TimeoutError:
            return _RECHECK

    def _hold(self, handle: ChannelHandle, message: Dict[str, Any]) -> None:
        seq = message["seq"]
        if seq <= handle.last_seq:
            return
        handle._ahead[seq] = message
        handle.known_seq = max(handle.known_seq, seq)

    async def _drain(self, handle: ChannelHandle) -> None:
        while not handle._closed:
            await self._deliver_held(handle)
            if not handle.waiting:
                return
            before = handle.last_seq
            await self._catch_up(handle)
            if handle.last_seq == before:
                # still waiting on an append in flight; recheck on the next tick
                return

    async def _deliver_held(self, handle: ChannelHandle) -> None:
        for seq in [s for s in handle._ahead if s <= handle.last_seq]:
            del handle._ahead[seq]
        while not handle._closed and handle.last_seq + 1 in handle._ahead:
            await self._deliver(handle, handle._ahead.pop(handle.last_seq + 1))

    async def _catch_up(self, handle: ChannelHandle) -> None:
        snapshot = await self._log.list(handle.conversation_id, after_seq=handle.last_seq)
        handle.known_seq = max(handle.known_seq, snapshot.reserved_seq)
        async for message in snapshot:
            if handle._closed:
                return
            await self._deliver(handle, message)
        # seqs up to upto_seq that were not yielded were abandoned
        handle.last_seq = max(handle.last_seq, snapshot.upto_seq)

    async def _deliver(self, handle: ChannelHandle, message: Dict[str, Any]) -> None:
        if handle._closed or message["seq"] <= handle.last_seq:
            return
        handle.last_seq = message["seq"]
        try:
            result = handle._on_message(message)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Subscriber callback on %s failed at seq %d", handle.conversation_id, handle.last_seq)

    async def _retry(self, handle: ChannelHandle, exc: Exception) -> bool:
        handle._failures += 1
        if handle._failures > self.retry_attempts:
            log.error("Catch-up on %s failed %d times: %s", handle.conversation_id, handle._failures, exc)
            await self._lose(handle)
            return False
        log.warning(
            "Catch-up on %s failed (%s); retry %d/%d", handle.conversation_id, exc, handle._failures, self.retry_attempts
        )
        await asyncio.sleep(self.retry_delay * handle._failures)
        handle._queue.put_nowait(_RESYNC)
        return True

    async def _lose(self, handle: ChannelHandle) -> None:
        exc = ChannelLost(handle.conversation_id, handle.last_seq)
        await self.unsubscribe(handle)
        if handle._on_lost is None:
            log.error("%s (no handler registered)", exc)
            return
        log.warning("%s", exc)
        result = handle._on_lost(exc)
        if inspect.isawaitable(result):
            await result
