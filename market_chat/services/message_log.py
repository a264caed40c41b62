import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from market_chat.config import get_settings
from market_chat.exceptions import ConversationNotFound, NotAParticipant, ValidationError
from market_chat.models.message import MESSAGE_KINDS, SYSTEM_SENDER
from market_chat.schemas.messaging import encode_message
from market_chat.utils.realtime_bus import conversation_channel

log = logging.getLogger("market_chat.message_log")


def validate_message(kind: str, content: Optional[str]) -> str:
    if kind not in MESSAGE_KINDS:
        raise ValidationError(f"Unknown message kind: {kind!r}")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ValidationError("Message content must be a string")
    if kind == "text" and not content.strip():
        raise ValidationError("Message content cannot be empty")
    return content.strip() if kind == "text" else content


class MessageSnapshot:
    """Messages of one conversation in ``(after_seq, upto_seq]``, fixed at creation.

    ``upto_seq`` never passes an append that is still being written, so every
    message the snapshot covers is already stored. ``reserved_seq`` is the last
    seq handed out at that time. Iterating starts a fresh store read each time,
    so a snapshot can be walked more than once and always yields the same range.
    """

    def __init__(self, repo, conversation_id: str, after_seq: int, upto_seq: int, reserved_seq: Optional[int] = None) -> None:
        self._repo = repo
        self.conversation_id = conversation_id
        self.after_seq = after_seq
        self.upto_seq = upto_seq
        self.reserved_seq = upto_seq if reserved_seq is None else reserved_seq

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        if self.upto_seq <= self.after_seq:
            return _empty()
        return self._repo.iter_range(self.conversation_id, self.after_seq, self.upto_seq)

    async def to_list(self) -> List[Dict[str, Any]]:
        return [m async for m in self]


async def _empty():
    return
    yield


class MessageLog:

    def __init__(self, message_repo, conversation_repo, participant_repo, bus) -> None:
        self._messages = message_repo
        self._conversations = conversation_repo
        self._participants = participant_repo
        self._bus = bus
        self.slot_timeout = get_settings().append_slot_timeout

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        content = validate_message(kind, content)
        if sender_id != SYSTEM_SENDER and not await self._participants.exists(conversation_id, sender_id):
            if await self._conversations.get(conversation_id) is None:
                raise ConversationNotFound(conversation_id)
            raise NotAParticipant(conversation_id, sender_id)

        message = await self._write(conversation_id, sender_id, content, kind, metadata, client_message_id)
        await self._publish(message)
        return message

    async def append_system(self, conversation_id: str, content: str, draft: bool = False) -> Dict[str, Any]:
        """Write a system message. With ``draft`` the conversation may still be uncommitted, and nothing is published."""
        content = validate_message("system", content)
        message = await self._write(conversation_id, SYSTEM_SENDER, content, "system", None, None, allow_draft=draft)
        if not draft:
            await self._publish(message)
        return message

    async def list(self, conversation_id: str, after_seq: int = 0) -> MessageSnapshot:
        upto, reserved = await self.bounds(conversation_id, after_seq)
        return MessageSnapshot(self._messages, conversation_id, after_seq, upto, reserved)

    async def latest_seq(self, conversation_id: str) -> int:
        upto, _ = await self.bounds(conversation_id)
        return upto

    async def bounds(self, conversation_id: str, after_seq: int = 0) -> Tuple[int, int]:
        """Return ``(upto, reserved)`` for reads past ``after_seq``.

        ``reserved`` is the last seq handed out. ``upto`` is the last seq that
        can be read without skipping an append still in flight: it stops below
        the first reserved seq that is neither stored nor recorded as failed,
        unless that reservation is older than ``append_slot_timeout``.
        """
        conversation = await self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        reserved = conversation.get("message_seq", 0)
        if reserved <= after_seq:
            return after_seq, reserved

        failed = {slot["seq"] for slot in conversation.get("failed_slots") or ()}
        stored = await self._messages.stored_slots(conversation_id, after_seq, reserved)
        stored_seqs = {seq for seq, _ in stored}
        abandoned_before = datetime.now(timezone.utc) - timedelta(seconds=self.slot_timeout)

        upto = after_seq
        while upto < reserved:
            seq = upto + 1
            if seq not in stored_seqs and seq not in failed:
                # a later reservation bounds when this one was made
                reserved_by = next((at for s, at in stored if s > seq), conversation["updated_at"])
                if reserved_by >= abandoned_before:
                    break
                log.debug("Seq %d of %s was never stored; skipping it", seq, conversation_id)
            upto = seq
        return upto, reserved

    async def _write(self, conversation_id, sender_id, content, kind, metadata, client_message_id, allow_draft=False):
        slot = await self._conversations.reserve_message_slot(conversation_id, allow_draft=allow_draft)
        if slot is None:
            raise ConversationNotFound(conversation_id)
        seq, created_at, previous_updated_at = slot
        try:
            return await self._messages.insert(
                conversation_id=conversation_id,
                seq=seq,
                created_at=created_at,
                sender_id=sender_id,
                content=content,
                kind=kind,
                metadata=metadata,
                client_message_id=client_message_id,
            )
        except Exception:
            log.warning("Insert of message %d in %s failed; releasing the slot", seq, conversation_id)
            await self._release_slot(conversation_id, seq, created_at, previous_updated_at)
            raise

    async def _release_slot(self, conversation_id: str, seq: int, created_at: datetime, previous_updated_at: datetime) -> None:
        try:
            await self._conversations.record_failed_slot(conversation_id, seq, created_at, previous_updated_at)
            await self._rewind_updated_at(conversation_id, created_at, previous_updated_at)
        except Exception:
            log.exception("Could not release slot %d of %s", seq, conversation_id)

    async def _rewind_updated_at(self, conversation_id: str, created_at: datetime, previous_updated_at: datetime) -> None:
        # walk back past earlier failed slots to the newest reservation that was kept
        conversation = await self._conversations.get(conversation_id, include_draft=True)
        if conversation is None:
            return
        failed = {slot["created_at"]: slot["previous_updated_at"] for slot in conversation.get("failed_slots") or ()}
        target = previous_updated_at
        while target in failed:
            target = failed[target]
        await self._conversations.restore_recency(conversation_id, created_at, target)

    async def _publish(self, message: Dict[str, Any]) -> None:
        try:
            await self._bus.publish(conversation_channel(message["conversation_id"]), encode_message(message))
        except Exception:
            # the message is committed; live viewers catch up from the log
            log.exception("Publishing message %s failed", message["_id"])
