import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from market_chat.config import get_settings
from market_chat.exceptions import ValidationError
from market_chat.repositories.conversation_repository import ConversationRepository
from market_chat.repositories.message_repository import MessageRepository
from market_chat.repositories.participant_repository import ParticipantRepository
from market_chat.repositories.read_receipt_repository import ReadReceiptRepository
from market_chat.repositories.user_repository import UserRepository
from market_chat.services.conversation_directory import ConversationDirectory
from market_chat.services.inbox_projector import InboxProjector
from market_chat.services.live_channel import LiveUpdateChannel
from market_chat.services.message_log import MessageLog
from market_chat.services.participant_registry import ParticipantRegistry
from market_chat.services.read_receipts import ReadReceiptTracker
from market_chat.services.viewer_session import ViewerSession

log = logging.getLogger("market_chat.service")

BROADCAST_TITLES = {"announcement": "Announcement", "promotion": "Promotion"}


class ConversationService:
    """Single entry point for every messaging surface (customer, vendor, manager...)."""

    def __init__(self, conversation_repo, participant_repo, message_repo, receipt_repo, profile_directory, bus) -> None:
        self.profiles = profile_directory
        self.message_log = MessageLog(message_repo, conversation_repo, participant_repo, bus)
        self.participants = ParticipantRegistry(participant_repo, conversation_repo)
        self.receipts = ReadReceiptTracker(receipt_repo, message_repo)
        self.projector = InboxProjector(message_repo, profile_directory)
        self.directory = ConversationDirectory(
            conversation_repo,
            participant_repo,
            message_repo,
            self.message_log,
            self.projector,
            self.receipts,
            profile_directory,
        )
        self.channel = LiveUpdateChannel(bus, self.message_log)

    @classmethod
    def from_database(cls, db, bus) -> "ConversationService":
        return cls(
            ConversationRepository(db),
            ParticipantRepository(db),
            MessageRepository(db),
            ReadReceiptRepository(db),
            UserRepository(db),
            bus,
        )

    @staticmethod
    async def ensure_indexes(db) -> None:
        for repo in (ConversationRepository(db), ParticipantRepository(db), MessageRepository(db), ReadReceiptRepository(db)):
            await repo.ensure_indexes()

    async def create_conversation(
        self,
        initiator_id: str,
        title: str,
        kind: str,
        participant_ids: Iterable[str],
        initiator_role: str = "owner",
    ) -> Dict[str, Any]:
        return await self.directory.create(initiator_id, title, kind, list(participant_ids), initiator_role=initiator_role)

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        return await self.directory.get(conversation_id)

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.directory.list_for_user(user_id)

    async def search_conversations(self, user_id: str, term: Optional[str]) -> List[Dict[str, Any]]:
        return await self.directory.search_for_user(user_id, term)

    async def load_conversation(self, user_id: str, conversation_id: str, after_seq: int = 0) -> List[Dict[str, Any]]:
        """Read the log for a viewer and mark what they were shown as read."""
        await self.participants.require_participant(conversation_id, user_id)
        snapshot = await self.message_log.list(conversation_id, after_seq=after_seq)
        messages = await snapshot.to_list()
        await self.receipts.mark_loaded(user_id, messages)
        return await self.with_sender_names(messages)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.message_log.append(
            conversation_id, sender_id, content, kind=kind, metadata=metadata, client_message_id=client_message_id
        )

    async def mark_read(self, user_id: str, message_ids: Iterable[str]) -> int:
        return await self.receipts.mark_read(user_id, message_ids)

    async def list_participants(self, conversation_id: str) -> List[Dict[str, Any]]:
        await self.directory.get(conversation_id)
        participants = await self.participants.list_participants(conversation_id)
        profiles = await self.profiles.resolve_profiles(p["user_id"] for p in participants)
        for p in participants:
            profile = profiles.get(p["user_id"]) or {}
            p["display_name"] = profile.get("display_name")
            p["email"] = profile.get("email")
        return participants

    async def add_participants(self, conversation_id: str, members: Iterable[Tuple[str, str]]) -> int:
        return await self.participants.add_participants(conversation_id, members)

    async def send_bulk_message(
        self,
        sender_id: str,
        user_ids: Iterable[str],
        content: str,
        kind: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        title = BROADCAST_TITLES.get(kind)
        if title is None:
            raise ValidationError(f"Cannot broadcast messages of kind {kind!r}")
        conversation = await self.directory.create(sender_id, title, "group", list(user_ids))
        return await self.message_log.append(conversation["_id"], sender_id, content, kind=kind, metadata=metadata)

    async def send_announcement(self, sender_id, title, content, user_ids, metadata=None) -> Dict[str, Any]:
        return await self.send_bulk_message(sender_id, user_ids, content, "announcement", self._broadcast_metadata(title, metadata))

    async def send_promotion(self, sender_id, title, content, user_ids, metadata=None) -> Dict[str, Any]:
        return await self.send_bulk_message(sender_id, user_ids, content, "promotion", self._broadcast_metadata(title, metadata))

    async def send_order_confirmation(self, sender_id: str, order_id: str, user_id: str, order_details: Dict[str, Any]) -> Dict[str, Any]:
        items = order_details.get("items") or []
        if not items or "total" not in order_details:
            raise ValidationError("Order details need items and a total")
        conversation = await self.directory.create(sender_id, f"Order #{order_id}", "direct", [user_id])
        metadata = {"order_id": order_id, "total": order_details["total"], "items": items}
        return await self.message_log.append(
            conversation["_id"],
            sender_id,
            format_order_confirmation(order_id, items, order_details["total"]),
            kind="order_confirmation",
            metadata=metadata,
        )

    def open_viewer(self, user_id: str, on_message=None, on_lost=None) -> ViewerSession:
        return ViewerSession(
            self.message_log, self.channel, self.receipts, self.participants, user_id, on_message=on_message, on_lost=on_lost
        )

    async def with_sender_names(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        names = await self.projector.display_names(m["sender_id"] for m in messages)
        for m in messages:
            m["sender_name"] = names.get(m["sender_id"])
        return messages

    async def shutdown(self) -> None:
        await self.channel.close_all()

    @staticmethod
    def _broadcast_metadata(title: str, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        expires_at = datetime.now(timezone.utc) + timedelta(days=get_settings().broadcast_ttl_days)
        return {**(metadata or {}), "title": title, "expires_at": expires_at.isoformat()}


def _amount(value: Any) -> str:
    text = f"{float(value):,.2f}"
    return text.rstrip("0").rstrip(".")


def format_order_confirmation(order_id: str, items: List[Dict[str, Any]], total: Any) -> str:
    try:
        lines = [f"- {item['quantity']}x {item['name']} (₦{_amount(item['price'])})" for item in items]
        total_text = _amount(total)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed order item: {exc}") from exc
    return "\n".join(
        [
            f"Thank you for your order #{order_id}!",
            "",
            "Order Details:",
            *lines,
            "",
            f"Total: ₦{total_text}",
            "",
            "We'll notify you when your order is ready for delivery.",
        ]
    )
