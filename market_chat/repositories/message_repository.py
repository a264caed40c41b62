from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from market_chat.exceptions import TransientStoreError
from market_chat.models.message import MessageDocument
from market_chat.repositories.base import TRANSIENT_ERRORS, normalize, read_op, to_object_id, to_object_ids, write_op


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)

    @write_op
    async def insert(
        self,
        conversation_id: str,
        seq: int,
        created_at: datetime,
        sender_id: str,
        content: str,
        kind: str,
        metadata: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "_id": to_object_id(message_id) if message_id else ObjectId(),
            "conversation_id": to_object_id(conversation_id),
            "sender_id": sender_id,
            "content": content,
            "kind": kind,
            "metadata": metadata,
            "created_at": created_at,
            "seq": seq,
            "client_message_id": client_message_id,
        }
        await self.collection.insert_one(doc)
        return normalize(dict(doc), "conversation_id")

    @write_op
    async def delete_by_conversation(self, conversation_id: str) -> int:
        result = await self.collection.delete_many({"conversation_id": to_object_id(conversation_id)})
        return result.deleted_count

    async def iter_range(self, conversation_id: str, after_seq: int, upto_seq: int) -> AsyncIterator[MessageDocument]:
        """Stream messages with ``after_seq < seq <= upto_seq`` in ``seq`` order."""
        query = {
            "conversation_id": to_object_id(conversation_id),
            "seq": {"$gt": after_seq, "$lte": upto_seq},
        }
        cursor = self.collection.find(query).sort("seq", ASCENDING)
        try:
            async for doc in cursor:
                yield normalize(doc, "conversation_id")
        except TRANSIENT_ERRORS as exc:
            raise TransientStoreError(f"reading messages of {conversation_id} failed: {exc}") from exc

    @read_op
    async def stored_slots(self, conversation_id: str, after_seq: int, upto_seq: int) -> List[Tuple[int, datetime]]:
        """``(seq, created_at)`` of the stored messages in ``(after_seq, upto_seq]``, ascending."""
        query = {
            "conversation_id": to_object_id(conversation_id),
            "seq": {"$gt": after_seq, "$lte": upto_seq},
        }
        cursor = self.collection.find(query, projection={"_id": 0, "seq": 1, "created_at": 1}).sort("seq", ASCENDING)
        return [(doc["seq"], doc["created_at"]) async for doc in cursor]

    @read_op
    async def latest_for_conversations(self, conversation_ids: Iterable[str]) -> Dict[str, MessageDocument]:
        """Newest message of each conversation in a single aggregate."""
        ids = to_object_ids(conversation_ids)
        if not ids:
            return {}
        pipeline = [
            {"$match": {"conversation_id": {"$in": ids}}},
            {"$sort": {"conversation_id": 1, "seq": -1}},
            {"$group": {"_id": "$conversation_id", "message": {"$first": "$$ROOT"}}},
        ]
        latest: Dict[str, Dict[str, Any]] = {}
        async for row in self.collection.aggregate(pipeline):
            latest[str(row["_id"])] = normalize(row["message"], "conversation_id")
        return latest

    @read_op
    async def find_by_ids(self, message_ids: Iterable[str]) -> List[MessageDocument]:
        ids = to_object_ids(message_ids)
        if not ids:
            return []
        items = await self.collection.find({"_id": {"$in": ids}}).to_list(length=None)
        return [normalize(it, "conversation_id") for it in items]

    @read_op
    async def count_not_sent_by(self, user_id: str, conversation_ids: Iterable[str]) -> Dict[str, int]:
        ids = to_object_ids(conversation_ids)
        if not ids:
            return {}
        pipeline = [
            {"$match": {"conversation_id": {"$in": ids}, "sender_id": {"$ne": user_id}}},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        return {str(row["_id"]): row["count"] async for row in self.collection.aggregate(pipeline)}
