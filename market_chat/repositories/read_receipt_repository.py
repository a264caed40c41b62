from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import BulkWriteError

from market_chat.models.read_receipt import ReadReceiptDocument
from market_chat.repositories.base import normalize, read_op, to_object_id, to_object_ids, write_op


class ReadReceiptRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["read_receipts"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("message_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await self.collection.create_index([("user_id", ASCENDING), ("conversation_id", ASCENDING)])

    @write_op
    async def upsert_read(self, user_id: str, messages: Sequence[Dict[str, Any]], read_at: datetime) -> int:
        """Idempotently mark ``messages`` read; the first ``read_at`` is kept."""
        if not messages:
            return 0
        ops = [
            UpdateOne(
                {"message_id": to_object_id(m["_id"]), "user_id": user_id},
                {
                    "$set": {"status": "read"},
                    "$setOnInsert": {"conversation_id": to_object_id(m["conversation_id"]), "read_at": read_at},
                },
                upsert=True,
            )
            for m in messages
        ]
        try:
            await self.collection.bulk_write(ops, ordered=False)
        except BulkWriteError as exc:
            # concurrent mark of the same pair; the other writer's receipt stands
            if any(err.get("code") != 11000 for err in exc.details.get("writeErrors", [])):
                raise
        return len(ops)

    @read_op
    async def list_for_messages(self, message_ids: Iterable[str]) -> List[ReadReceiptDocument]:
        ids = to_object_ids(message_ids)
        if not ids:
            return []
        items = await self.collection.find({"message_id": {"$in": ids}}).to_list(length=None)
        return [normalize(it, "message_id", "conversation_id") for it in items]

    @read_op
    async def count_read_by(self, user_id: str, conversation_ids: Iterable[str]) -> Dict[str, int]:
        ids = to_object_ids(conversation_ids)
        if not ids:
            return {}
        pipeline = [
            {"$match": {"user_id": user_id, "conversation_id": {"$in": ids}}},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        return {str(row["_id"]): row["count"] async for row in self.collection.aggregate(pipeline)}
