import inspect
import logging
import uuid
from typing import Any, Dict, List, Optional

from market_chat.exceptions import ValidationError
from market_chat.services.timeline import ConversationTimeline

log = logging.getLogger("market_chat.viewer")


class ViewerSession:
    """One viewer's open conversation: at most one live channel at a time.

    ``open`` releases the previous conversation's channel before acquiring the
    next one. Loaded and delivered messages from other senders are marked read.
    """

    def __init__(self, message_log, channel, receipts, participants, user_id: str, on_message=None, on_lost=None) -> None:
        self._log = message_log
        self._channel = channel
        self._receipts = receipts
        self._participants = participants
        self.user_id = user_id
        self._on_message = on_message
        self._on_lost = on_lost
        self._handle = None
        self._timeline: Optional[ConversationTimeline] = None
        self.conversation_id: Optional[str] = None

    @property
    def timeline(self) -> Optional[ConversationTimeline]:
        return self._timeline

    async def open(self, conversation_id: str) -> List[Dict[str, Any]]:
        await self._participants.require_participant(conversation_id, self.user_id)
        await self.close()
        snapshot = await self._log.list(conversation_id)
        messages = await snapshot.to_list()
        await self._receipts.mark_loaded(self.user_id, messages)

        self._timeline = ConversationTimeline(messages)
        self.conversation_id = conversation_id
        self._handle = await self._channel.subscribe(
            conversation_id,
            self._on_delivery,
            after_seq=snapshot.upto_seq,
            on_lost=self._on_channel_lost,
        )
        log.debug("User %s opened %s with %d messages", self.user_id, conversation_id, len(messages))
        return self._timeline.messages()

    async def send(
        self,
        content: str,
        kind: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.conversation_id is None or self._timeline is None:
            raise ValidationError("No conversation is open")
        client_message_id = client_message_id or uuid.uuid4().hex
        timeline = self._timeline
        timeline.add_optimistic(client_message_id, self.user_id, content, kind, metadata)
        try:
            message = await self._log.append(
                self.conversation_id,
                self.user_id,
                content,
                kind=kind,
                metadata=metadata,
                client_message_id=client_message_id,
            )
        except Exception:
            timeline.discard(client_message_id)
            raise
        timeline.merge(message)
        return message

    async def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._channel.unsubscribe(handle)
        self._timeline = None
        self.conversation_id = None

    async def _on_delivery(self, message: Dict[str, Any]) -> None:
        if self._timeline is None or not self._timeline.merge(message):
            return
        if message["sender_id"] != self.user_id:
            await self._receipts.mark_loaded(self.user_id, [message])
        if self._on_message is not None:
            result = self._on_message(message)
            if inspect.isawaitable(result):
                await result

    async def _on_channel_lost(self, exc) -> None:
        self._handle = None
        if self._on_lost is not None:
            result = self._on_lost(exc)
            if inspect.isawaitable(result):
                await result

    async def __aenter__(self) -> "ViewerSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
