from datetime import datetime
from typing import Any, Dict, Literal, Optional, TypedDict


MessageKind = Literal["text", "system", "announcement", "promotion", "order_confirmation"]

MESSAGE_KINDS = ("text", "system", "announcement", "promotion", "order_confirmation")

# Reserved sender id for generated messages
SYSTEM_SENDER = "system"


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    kind: MessageKind
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    # per-conversation, strictly increasing from 1
    seq: int
    # client correlation id for optimistic sends
    client_message_id: Optional[str]
