from typing import Any, Dict, Iterable, List, Tuple

from market_chat.exceptions import ConversationNotFound, NotAParticipant, ValidationError


class ParticipantRegistry:
    """Membership of conversations. Roles are recorded, never checked here."""

    def __init__(self, participant_repo, conversation_repo) -> None:
        self._participants = participant_repo
        self._conversations = conversation_repo

    async def add_participants(self, conversation_id: str, members: Iterable[Tuple[str, str]]) -> int:
        pairs = _dedupe(members)
        if not pairs:
            return 0
        if await self._conversations.get(conversation_id) is None:
            raise ConversationNotFound(conversation_id)
        return await self._participants.add_many(conversation_id, pairs)

    async def list_participants(self, conversation_id: str) -> List[Dict[str, Any]]:
        rows = await self._participants.list_for_conversation(conversation_id)
        unique: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            unique.setdefault(row["user_id"], {"user_id": row["user_id"], "role": row["role"]})
        return list(unique.values())

    async def is_participant(self, conversation_id: str, user_id: str) -> bool:
        return await self._participants.exists(conversation_id, user_id)

    async def require_participant(self, conversation_id: str, user_id: str) -> None:
        if await self.is_participant(conversation_id, user_id):
            return
        if await self._conversations.get(conversation_id) is None:
            raise ConversationNotFound(conversation_id)
        raise NotAParticipant(conversation_id, user_id)


def _dedupe(members: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """First occurrence of each user wins."""
    seen = set()
    pairs: List[Tuple[str, str]] = []
    for user_id, role in members:
        if not user_id or not isinstance(user_id, str):
            raise ValidationError("Participant user id must be a non-empty string")
        if user_id in seen:
            continue
        seen.add(user_id)
        pairs.append((user_id, role or "member"))
    return pairs
