from typing import Any, Dict, Iterable, Optional

from market_chat.models.message import SYSTEM_SENDER

SYSTEM_DISPLAY_NAME = "System"

# Projected for conversations that have no messages yet
EMPTY_SUMMARY: Dict[str, Any] = {
    "empty": True,
    "message_id": None,
    "content": None,
    "kind": None,
    "created_at": None,
    "sender_id": None,
    "sender_name": None,
}


class InboxProjector:
    """Resolves the newest message of many conversations in one pass."""

    def __init__(self, message_repo, profile_directory) -> None:
        self._messages = message_repo
        self._profiles = profile_directory

    async def project(self, conversations: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        ids = [c["_id"] for c in conversations]
        if not ids:
            return {}
        latest = await self._messages.latest_for_conversations(ids)
        names = await self.display_names(m["sender_id"] for m in latest.values())

        summaries: Dict[str, Dict[str, Any]] = {}
        for cid in ids:
            message = latest.get(cid)
            if message is None:
                summaries[cid] = dict(EMPTY_SUMMARY)
                continue
            summaries[cid] = {
                "empty": False,
                "message_id": message["_id"],
                "content": message["content"],
                "kind": message["kind"],
                "created_at": message["created_at"],
                "sender_id": message["sender_id"],
                "sender_name": names.get(message["sender_id"]),
            }
        return summaries

    async def display_names(self, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        wanted = set(user_ids)
        names: Dict[str, Optional[str]] = {}
        if SYSTEM_SENDER in wanted:
            names[SYSTEM_SENDER] = SYSTEM_DISPLAY_NAME
            wanted.discard(SYSTEM_SENDER)
        if wanted:
            profiles = await self._profiles.resolve_profiles(wanted)
            for user_id in wanted:
                profile = profiles.get(user_id)
                names[user_id] = profile["display_name"] if profile else None
        return names
