from typing import Any, Dict, Iterable, List, Optional


class ConversationTimeline:
    """What a viewer has on screen for one conversation, keyed by message id.

    Optimistic sends sit under their ``client_message_id`` until the stored
    message arrives, either as the append result or as a channel delivery,
    whichever comes first. The later copy then merges as a no-op.
    """

    def __init__(self, messages: Iterable[Dict[str, Any]] = ()) -> None:
        self._by_id: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, Dict[str, Any]] = {}
        for message in messages:
            self.merge(message)

    def add_optimistic(
        self,
        client_message_id: str,
        sender_id: str,
        content: str,
        kind: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "_id": None,
            "client_message_id": client_message_id,
            "sender_id": sender_id,
            "content": content,
            "kind": kind,
            "metadata": metadata,
            "seq": None,
            "pending": True,
        }
        self._pending[client_message_id] = entry
        return entry

    def discard(self, client_message_id: str) -> None:
        self._pending.pop(client_message_id, None)

    def merge(self, message: Dict[str, Any]) -> bool:
        """Merge a stored message. True only when it adds a new row to the view."""
        message_id = message["_id"]
        if message_id in self._by_id:
            return False
        self._by_id[message_id] = message
        client_id = message.get("client_message_id")
        if client_id and self._pending.pop(client_id, None) is not None:
            # the optimistic row becomes this message
            return False
        return True

    def contains(self, message_id: str) -> bool:
        return message_id in self._by_id

    def messages(self) -> List[Dict[str, Any]]:
        confirmed = sorted(self._by_id.values(), key=lambda m: m["seq"])
        return confirmed + list(self._pending.values())

    def __len__(self) -> int:
        return len(self._by_id) + len(self._pending)
