from datetime import datetime
from typing import List, Literal, Optional, TypedDict


ConversationKind = Literal["direct", "group"]
ConversationState = Literal["draft", "created"]

CONVERSATION_KINDS = ("direct", "group")


class FailedSlot(TypedDict):
    seq: int
    created_at: datetime
    # updated_at as it was before this slot was reserved
    previous_updated_at: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    title: Optional[str]
    kind: ConversationKind
    # drafts are invisible to every read path
    state: ConversationState
    created_at: datetime
    updated_at: datetime
    # last sequence number handed out to a message
    message_seq: int
    previous_updated_at: datetime
    # reserved seqs whose message was never stored
    failed_slots: List[FailedSlot]
