from datetime import datetime, timezone
from typing import Iterable, List, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import BulkWriteError

from market_chat.models.participant import ParticipantDocument
from market_chat.repositories.base import normalize, read_op, to_object_id, to_object_ids, write_op


class ParticipantRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversation_participants"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await self.collection.create_index([("user_id", ASCENDING)])

    @write_op
    async def add_many(self, conversation_id: str, members: Sequence[Tuple[str, str]]) -> int:
        """Upsert members; existing pairs keep their role. Returns rows added."""
        if not members:
            return 0
        convo_oid = to_object_id(conversation_id)
        now = datetime.now(timezone.utc)
        ops = [
            UpdateOne(
                {"conversation_id": convo_oid, "user_id": user_id},
                {"$setOnInsert": {"role": role, "created_at": now}},
                upsert=True,
            )
            for user_id, role in members
        ]
        try:
            result = await self.collection.bulk_write(ops, ordered=False)
        except BulkWriteError as exc:
            # a concurrent add won the race for these pairs; treat as no-ops
            if any(err.get("code") != 11000 for err in exc.details.get("writeErrors", [])):
                raise
            return exc.details.get("nUpserted", 0)
        return result.upserted_count

    @write_op
    async def delete_by_conversation(self, conversation_id: str) -> int:
        result = await self.collection.delete_many({"conversation_id": to_object_id(conversation_id)})
        return result.deleted_count

    @read_op
    async def list_for_conversation(self, conversation_id: str) -> List[ParticipantDocument]:
        cursor = self.collection.find({"conversation_id": to_object_id(conversation_id)}).sort("created_at", ASCENDING)
        items = await cursor.to_list(length=None)
        return [normalize(it, "conversation_id") for it in items]

    @read_op
    async def list_for_conversations(self, conversation_ids: Iterable[str]) -> List[ParticipantDocument]:
        ids = to_object_ids(conversation_ids)
        if not ids:
            return []
        cursor = self.collection.find({"conversation_id": {"$in": ids}}).sort("created_at", ASCENDING)
        items = await cursor.to_list(length=None)
        return [normalize(it, "conversation_id") for it in items]

    @read_op
    async def conversation_ids_for_user(self, user_id: str) -> List[str]:
        ids = await self.collection.distinct("conversation_id", {"user_id": user_id})
        return [str(i) for i in ids]

    @read_op
    async def exists(self, conversation_id: str, user_id: str) -> bool:
        doc = await self.collection.find_one(
            {"conversation_id": to_object_id(conversation_id), "user_id": user_id},
            projection={"_id": 1},
        )
        return doc is not None
