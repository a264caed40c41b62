from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List


class ReadReceiptTracker:

    def __init__(self, receipt_repo, message_repo) -> None:
        self._receipts = receipt_repo
        self._messages = message_repo

    async def mark_read(self, user_id: str, message_ids: Iterable[str]) -> int:
        """Record that ``user_id`` has read the given messages.

        Unknown ids and the user's own messages are skipped. Safe to call
        repeatedly with overlapping ids: a (message, user) pair only ever has
        one receipt and keeps its first ``read_at``.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return 0
        messages = await self._messages.find_by_ids(ids)
        return await self.mark_loaded(user_id, messages)

    async def mark_loaded(self, user_id: str, messages: Iterable[Dict[str, Any]]) -> int:
        targets: Dict[str, Dict[str, Any]] = {}
        for message in messages:
            if message.get("_id") is None or message["sender_id"] == user_id:
                continue
            targets.setdefault(message["_id"], message)
        if not targets:
            return 0
        return await self._receipts.upsert_read(user_id, list(targets.values()), datetime.now(timezone.utc))

    async def unread_counts(self, user_id: str, conversation_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(conversation_ids)
        if not ids:
            return {}
        totals = await self._messages.count_not_sent_by(user_id, ids)
        read = await self._receipts.count_read_by(user_id, ids)
        return {cid: max(0, totals.get(cid, 0) - read.get(cid, 0)) for cid in ids}

    async def receipts_for(self, message_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return await self._receipts.list_for_messages(list(message_ids))
