import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from market_chat.exceptions import ConversationNotFound, CreateConversationFailed, ValidationError
from market_chat.models.conversation import CONVERSATION_KINDS

log = logging.getLogger("market_chat.directory")


@dataclass
class CreationStep:
    name: str
    execute: Callable[[], Awaitable[Any]]
    compensate: Optional[Callable[[], Awaitable[Any]]] = None


class ConversationDirectory:

    def __init__(self, conversation_repo, participant_repo, message_repo, message_log, projector, receipts, profile_directory) -> None:
        self._conversations = conversation_repo
        self._participants = participant_repo
        self._messages = message_repo
        self._log = message_log
        self._projector = projector
        self._receipts = receipts
        self._profiles = profile_directory

    async def create(
        self,
        initiator_id: str,
        title: str,
        kind: str,
        participant_user_ids: Iterable[str],
        initiator_role: str = "owner",
        member_role: str = "member",
    ) -> Dict[str, Any]:
        """Provision a conversation, its participants and the opening system message.

        The three writes run as staged steps against a ``draft`` conversation,
        which no read path returns. The last step commits it. If any step fails,
        the completed steps (and the failing one) are undone in reverse order and
        ``CreateConversationFailed`` is raised.
        """
        title, members = _validate_new_conversation(initiator_id, title, kind, participant_user_ids, initiator_role, member_role)
        conversation_id = str(ObjectId())
        committed: Dict[str, Any] = {}

        async def commit():
            doc = await self._conversations.mark_created(conversation_id)
            if doc is None:
                raise RuntimeError(f"draft {conversation_id} vanished before commit")
            committed.update(doc)

        steps = [
            CreationStep(
                "insert_conversation",
                lambda: self._conversations.insert_draft(conversation_id, title, kind),
                lambda: self._conversations.delete(conversation_id),
            ),
            CreationStep(
                "add_participants",
                lambda: self._participants.add_many(conversation_id, members),
                lambda: self._participants.delete_by_conversation(conversation_id),
            ),
            CreationStep(
                "system_message",
                lambda: self._log.append_system(conversation_id, f'Conversation "{title}" created', draft=True),
                lambda: self._messages.delete_by_conversation(conversation_id),
            ),
            CreationStep("commit", commit),
        ]
        await self._run_steps(title, steps)
        log.info("Conversation %s (%s) created by %s with %d participants", conversation_id, kind, initiator_id, len(members))
        return committed

    async def _run_steps(self, title: str, steps: List[CreationStep]) -> None:
        for index, step in enumerate(steps):
            try:
                await step.execute()
            except Exception as exc:
                log.warning("Conversation creation step %s failed: %s", step.name, exc)
                await self._compensate(steps[: index + 1])
                raise CreateConversationFailed(title, step.name) from exc

    async def _compensate(self, steps: List[CreationStep]) -> None:
        for step in reversed(steps):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
            except Exception:
                # the draft stays invisible to readers even if cleanup fails
                log.exception("Compensation for step %s failed", step.name)

    async def get(self, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        conversation_ids = await self._participants.conversation_ids_for_user(user_id)
        conversations = await self._conversations.list_by_ids(conversation_ids)
        if not conversations:
            return []
        ids = [c["_id"] for c in conversations]

        members: Dict[str, Dict[str, Dict[str, Any]]] = {cid: {} for cid in ids}
        for row in await self._participants.list_for_conversations(ids):
            members.setdefault(row["conversation_id"], {}).setdefault(
                row["user_id"], {"user_id": row["user_id"], "role": row["role"]}
            )
        summaries = await self._projector.project(conversations)
        unread = await self._receipts.unread_counts(user_id, ids)

        entries = [
            {
                "conversation": c,
                "participant_count": len(members[c["_id"]]),
                "participants": list(members[c["_id"]].values()),
                "last_message": summaries[c["_id"]],
                "unread_count": unread.get(c["_id"], 0),
            }
            for c in conversations
        ]
        entries.sort(key=lambda e: e["conversation"]["updated_at"], reverse=True)
        return entries

    async def search_for_user(self, user_id: str, term: Optional[str]) -> List[Dict[str, Any]]:
        entries = await self.list_for_user(user_id)
        needle = (term or "").strip().lower()
        if not needle:
            return entries
        user_ids = {p["user_id"] for e in entries for p in e["participants"]}
        profiles = await self._profiles.resolve_profiles(user_ids) if user_ids else {}

        def matches(entry):
            haystack = [entry["conversation"].get("title") or ""]
            for p in entry["participants"]:
                profile = profiles.get(p["user_id"]) or {}
                haystack.append(profile.get("display_name") or "")
                haystack.append(profile.get("email") or "")
            return any(needle in value.lower() for value in haystack)

        return [e for e in entries if matches(e)]


def _validate_new_conversation(
    initiator_id: str,
    title: str,
    kind: str,
    participant_user_ids: Iterable[str],
    initiator_role: str,
    member_role: str,
) -> Tuple[str, List[Tuple[str, str]]]:
    if not initiator_id:
        raise ValidationError("Initiator is required")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Conversation title is required")
    if kind not in CONVERSATION_KINDS:
        raise ValidationError(f"Unknown conversation kind: {kind!r}")
    requested = [u for u in (participant_user_ids or []) if u]
    if not requested:
        raise ValidationError("At least one participant is required")

    members: List[Tuple[str, str]] = [(initiator_id, initiator_role or "owner")]
    seen = {initiator_id}
    for user_id in requested:
        if user_id in seen:
            continue
        seen.add(user_id)
        members.append((user_id, member_role))
    return title.strip(), members
