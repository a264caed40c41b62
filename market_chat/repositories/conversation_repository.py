from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from market_chat.models.conversation import ConversationDocument
from market_chat.repositories.base import normalize, read_op, to_object_id, to_object_ids, write_op


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("state", ASCENDING), ("updated_at", DESCENDING)])

    @write_op
    async def insert_draft(self, conversation_id: str, title: Optional[str], kind: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "_id": to_object_id(conversation_id),
            "title": title,
            "kind": kind,
            "state": "draft",
            "created_at": now,
            "updated_at": now,
            "message_seq": 0,
        }
        await self.collection.insert_one(doc)
        return normalize(dict(doc))

    @write_op
    async def mark_created(self, conversation_id: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id), "state": "draft"},
            {"$set": {"state": "created"}},
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc) if doc else None

    @write_op
    async def delete(self, conversation_id: str) -> bool:
        result = await self.collection.delete_one({"_id": to_object_id(conversation_id)})
        return result.deleted_count > 0

    @write_op
    async def reserve_message_slot(
        self, conversation_id: str, allow_draft: bool = False
    ) -> Optional[Tuple[int, datetime, datetime]]:
        """Hand out the next ``(seq, created_at, previous_updated_at)`` for a conversation.

        The seq and ``updated_at`` move in one atomic document update, so
        concurrent appends are serialised by the store and ``created_at`` is
        strictly increasing within the conversation.
        """
        query: Dict[str, Any] = {"_id": to_object_id(conversation_id)}
        if not allow_draft:
            query["state"] = "created"
        doc = await self.collection.find_one_and_update(
            query,
            [
                {
                    "$set": {
                        "message_seq": {"$add": [{"$ifNull": ["$message_seq", 0]}, 1]},
                        "previous_updated_at": "$updated_at",
                        # +1ms keeps timestamps strictly ordered under clock ties
                        "updated_at": {"$max": ["$$NOW", {"$add": ["$updated_at", 1]}]},
                    }
                }
            ],
            projection={"message_seq": 1, "updated_at": 1, "previous_updated_at": 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return doc["message_seq"], doc["updated_at"], doc["previous_updated_at"]

    @write_op
    async def record_failed_slot(
        self, conversation_id: str, seq: int, created_at: datetime, previous_updated_at: datetime
    ) -> None:
        slot = {"seq": seq, "created_at": created_at, "previous_updated_at": previous_updated_at}
        await self.collection.update_one({"_id": to_object_id(conversation_id)}, {"$push": {"failed_slots": slot}})

    @write_op
    async def restore_recency(self, conversation_id: str, expected: datetime, updated_at: datetime) -> bool:
        """Set ``updated_at`` back, unless a later reservation has moved it since ``expected``."""
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "updated_at": expected},
            {"$set": {"updated_at": updated_at}},
        )
        return result.modified_count > 0

    @read_op
    async def get(self, conversation_id: str, include_draft: bool = False) -> Optional[ConversationDocument]:
        query: Dict[str, Any] = {"_id": to_object_id(conversation_id)}
        if not include_draft:
            query["state"] = "created"
        doc = await self.collection.find_one(query)
        return normalize(doc) if doc else None

    @read_op
    async def list_by_ids(self, conversation_ids: Iterable[str]) -> List[ConversationDocument]:
        ids = to_object_ids(conversation_ids)
        if not ids:
            return []
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find({"_id": {"$in": ids}, "state": "created"}).sort(sort)
        items = await cursor.to_list(length=None)
        return [normalize(it) for it in items]
