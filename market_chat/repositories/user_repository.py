from typing import Any, Dict, Iterable

from motor.motor_asyncio import AsyncIOMotorDatabase

from market_chat.models.user import UserDocument
from market_chat.repositories.base import read_op, to_object_ids


class UserRepository:
    """Read-only profile lookups against the marketplace ``users`` collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    @read_op
    async def resolve_profiles(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        wanted = {str(u) for u in user_ids}
        if not wanted:
            return {}
        cursor = self._collection.find(
            {"_id": {"$in": to_object_ids(wanted)}},
            projection={"full_name": 1, "email": 1, "role": 1},
        )
        profiles: Dict[str, Dict[str, Any]] = {}
        doc: UserDocument
        async for doc in cursor:
            user_id = str(doc["_id"])
            profiles[user_id] = {
                "display_name": doc.get("full_name") or doc.get("email") or user_id,
                "email": doc.get("email"),
                "role": doc.get("role"),
            }
        return profiles
