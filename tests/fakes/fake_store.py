"""In-memory stand-ins for the Mongo repositories, with failure injection.

Every public method yields to the event loop once before touching state, so
concurrent callers interleave the way they would against a real store, while
each individual operation stays atomic.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId


class FakeStore:
    """Shared state and failure switches for all fake repositories."""

    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.fail_on: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.conversations = FakeConversationRepository(self)
        self.participants = FakeParticipantRepository(self)
        self.messages = FakeMessageRepository(self)
        self.receipts = FakeReadReceiptRepository(self)
        self.users = FakeUserRepository(self, profiles or {})

    def hold(self, op: str) -> asyncio.Event:
        """Make the next call of ``op`` wait until the returned event is set."""
        gate = self.gates[op] = asyncio.Event()
        return gate

    async def enter(self, op: str) -> None:
        await asyncio.sleep(0)
        self.calls.append(op)
        gate = self.gates.pop(op, None)
        if gate is not None:
            await gate.wait()
        exc = self.fail_on.get(op)
        if exc is not None:
            raise exc

    def count(self, op: str) -> int:
        return self.calls.count(op)


class FakeConversationRepository:

    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def insert_draft(self, conversation_id: str, title: Optional[str], kind: str) -> Dict[str, Any]:
        await self._store.enter("conversations.insert_draft")
        now = datetime.now(timezone.utc)
        doc = {
            "_id": conversation_id,
            "title": title,
            "kind": kind,
            "state": "draft",
            "created_at": now,
            "updated_at": now,
            "message_seq": 0,
        }
        self.docs[conversation_id] = doc
        return dict(doc)

    async def mark_created(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        await self._store.enter("conversations.mark_created")
        doc = self.docs.get(conversation_id)
        if doc is None or doc["state"] != "draft":
            return None
        doc["state"] = "created"
        return dict(doc)

    async def delete(self, conversation_id: str) -> bool:
        await self._store.enter("conversations.delete")
        return self.docs.pop(conversation_id, None) is not None

    async def reserve_message_slot(self, conversation_id: str, allow_draft: bool = False) -> Optional[Tuple[int, datetime, datetime]]:
        await self._store.enter("conversations.reserve_message_slot")
        doc = self.docs.get(conversation_id)
        if doc is None or (doc["state"] != "created" and not allow_draft):
            return None
        doc["message_seq"] += 1
        doc["previous_updated_at"] = doc["updated_at"]
        doc["updated_at"] = max(datetime.now(timezone.utc), doc["updated_at"] + timedelta(milliseconds=1))
        return doc["message_seq"], doc["updated_at"], doc["previous_updated_at"]

    async def record_failed_slot(self, conversation_id: str, seq: int, created_at: datetime, previous_updated_at: datetime) -> None:
        await self._store.enter("conversations.record_failed_slot")
        if conversation_id in self.docs:
            slot = {"seq": seq, "created_at": created_at, "previous_updated_at": previous_updated_at}
            self.docs[conversation_id].setdefault("failed_slots", []).append(slot)

    async def restore_recency(self, conversation_id: str, expected: datetime, updated_at: datetime) -> bool:
        await self._store.enter("conversations.restore_recency")
        doc = self.docs.get(conversation_id)
        if doc is None or doc["updated_at"] != expected:
            return False
        doc["updated_at"] = updated_at
        return True

    async def get(self, conversation_id: str, include_draft: bool = False) -> Optional[Dict[str, Any]]:
        await self._store.enter("conversations.get")
        doc = self.docs.get(conversation_id)
        if doc is None or (doc["state"] != "created" and not include_draft):
            return None
        return dict(doc)

    async def list_by_ids(self, conversation_ids: Iterable[str]) -> List[Dict[str, Any]]:
        await self._store.enter("conversations.list_by_ids")
        wanted = set(conversation_ids)
        docs = [dict(d) for cid, d in self.docs.items() if cid in wanted and d["state"] == "created"]
        return sorted(docs, key=lambda d: d["updated_at"], reverse=True)


class FakeParticipantRepository:

    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self.rows: List[Dict[str, Any]] = []

    async def ensure_indexes(self) -> None:
        return None

    async def add_many(self, conversation_id: str, members: Sequence[Tuple[str, str]]) -> int:
        await self._store.enter("participants.add_many")
        added = 0
        for user_id, role in members:
            if any(r["conversation_id"] == conversation_id and r["user_id"] == user_id for r in self.rows):
                continue
            self.rows.append({
                "_id": str(ObjectId()),
                "conversation_id": conversation_id,
                "user_id": user_id,
                "role": role,
                "created_at": datetime.now(timezone.utc),
            })
            added += 1
        return added

    async def delete_by_conversation(self, conversation_id: str) -> int:
        await self._store.enter("participants.delete_by_conversation")
        before = len(self.rows)
        self.rows = [r for r in self.rows if r["conversation_id"] != conversation_id]
        return before - len(self.rows)

    async def list_for_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        await self._store.enter("participants.list_for_conversation")
        return [dict(r) for r in self.rows if r["conversation_id"] == conversation_id]

    async def list_for_conversations(self, conversation_ids: Iterable[str]) -> List[Dict[str, Any]]:
        await self._store.enter("participants.list_for_conversations")
        wanted = set(conversation_ids)
        return [dict(r) for r in self.rows if r["conversation_id"] in wanted]

    async def conversation_ids_for_user(self, user_id: str) -> List[str]:
        await self._store.enter("participants.conversation_ids_for_user")
        return list(dict.fromkeys(r["conversation_id"] for r in self.rows if r["user_id"] == user_id))

    async def exists(self, conversation_id: str, user_id: str) -> bool:
        await self._store.enter("participants.exists")
        return any(r["conversation_id"] == conversation_id and r["user_id"] == user_id for r in self.rows)


class FakeMessageRepository:

    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self.docs: List[Dict[str, Any]] = []

    async def ensure_indexes(self) -> None:
        return None

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
    ) -> Dict[str, Any]:
        await self._store.enter("messages.insert")
        doc = {
            "_id": message_id or str(ObjectId()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "kind": kind,
            "metadata": metadata,
            "created_at": created_at,
            "seq": seq,
            "client_message_id": client_message_id,
        }
        self.docs.append(doc)
        return dict(doc)

    async def delete_by_conversation(self, conversation_id: str) -> int:
        await self._store.enter("messages.delete_by_conversation")
        before = len(self.docs)
        self.docs = [d for d in self.docs if d["conversation_id"] != conversation_id]
        return before - len(self.docs)

    async def iter_range(self, conversation_id: str, after_seq: int, upto_seq: int) -> AsyncIterator[Dict[str, Any]]:
        await self._store.enter("messages.iter_range")
        rows = sorted(
            (d for d in self.docs if d["conversation_id"] == conversation_id and after_seq < d["seq"] <= upto_seq),
            key=lambda d: d["seq"],
        )
        for row in rows:
            await asyncio.sleep(0)
            yield dict(row)

    async def stored_slots(self, conversation_id: str, after_seq: int, upto_seq: int) -> List[Tuple[int, datetime]]:
        await self._store.enter("messages.stored_slots")
        rows = [d for d in self.docs if d["conversation_id"] == conversation_id and after_seq < d["seq"] <= upto_seq]
        return sorted((d["seq"], d["created_at"]) for d in rows)

    async def latest_for_conversations(self, conversation_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        await self._store.enter("messages.latest_for_conversations")
        latest: Dict[str, Dict[str, Any]] = {}
        wanted = set(conversation_ids)
        for doc in self.docs:
            cid = doc["conversation_id"]
            if cid in wanted and (cid not in latest or doc["seq"] > latest[cid]["seq"]):
                latest[cid] = dict(doc)
        return latest

    async def find_by_ids(self, message_ids: Iterable[str]) -> List[Dict[str, Any]]:
        await self._store.enter("messages.find_by_ids")
        wanted = set(message_ids)
        return [dict(d) for d in self.docs if d["_id"] in wanted]

    async def count_not_sent_by(self, user_id: str, conversation_ids: Iterable[str]) -> Dict[str, int]:
        await self._store.enter("messages.count_not_sent_by")
        wanted = set(conversation_ids)
        counts: Dict[str, int] = {}
        for doc in self.docs:
            if doc["conversation_id"] in wanted and doc["sender_id"] != user_id:
                counts[doc["conversation_id"]] = counts.get(doc["conversation_id"], 0) + 1
        return counts

    def for_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        return sorted((d for d in self.docs if d["conversation_id"] == conversation_id), key=lambda d: d["seq"])


class FakeReadReceiptRepository:

    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self.rows: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def upsert_read(self, user_id: str, messages: Sequence[Dict[str, Any]], read_at: datetime) -> int:
        await self._store.enter("receipts.upsert_read")
        for m in messages:
            key = (m["_id"], user_id)
            if key in self.rows:
                self.rows[key]["status"] = "read"
                continue
            self.rows[key] = {
                "_id": str(ObjectId()),
                "message_id": m["_id"],
                "conversation_id": m["conversation_id"],
                "user_id": user_id,
                "status": "read",
                "read_at": read_at,
            }
        return len(messages)

    async def list_for_messages(self, message_ids: Iterable[str]) -> List[Dict[str, Any]]:
        await self._store.enter("receipts.list_for_messages")
        wanted = set(message_ids)
        return [dict(r) for r in self.rows.values() if r["message_id"] in wanted]

    async def count_read_by(self, user_id: str, conversation_ids: Iterable[str]) -> Dict[str, int]:
        await self._store.enter("receipts.count_read_by")
        wanted = set(conversation_ids)
        counts: Dict[str, int] = {}
        for r in self.rows.values():
            if r["user_id"] == user_id and r["conversation_id"] in wanted:
                counts[r["conversation_id"]] = counts.get(r["conversation_id"], 0) + 1
        return counts


class FakeUserRepository:

    def __init__(self, store: FakeStore, profiles: Dict[str, Dict[str, Any]]) -> None:
        self._store = store
        self.profiles = profiles

    async def resolve_profiles(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        await self._store.enter("users.resolve_profiles")
        return {u: dict(self.profiles[u]) for u in set(user_ids) if u in self.profiles}
