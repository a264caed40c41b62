from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from market_chat.models.conversation import ConversationKind
from market_chat.models.message import MessageKind


class MessageOut(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    conversation_id: str
    sender_id: str
    content: str
    kind: MessageKind
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    seq: int
    client_message_id: Optional[str] = None
    sender_name: Optional[str] = None


class ConversationOut(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    title: Optional[str] = None
    kind: ConversationKind
    created_at: datetime
    updated_at: datetime


class ParticipantOut(BaseModel):

    user_id: str
    role: str
    display_name: Optional[str] = None
    email: Optional[str] = None


class LastMessageSummary(BaseModel):

    empty: bool
    message_id: Optional[str] = None
    content: Optional[str] = None
    kind: Optional[MessageKind] = None
    created_at: Optional[datetime] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None


class InboxEntryOut(BaseModel):

    conversation: ConversationOut
    participant_count: int
    participants: List[ParticipantOut] = []
    last_message: LastMessageSummary
    unread_count: int = 0


class ConversationCreate(BaseModel):

    title: str
    kind: ConversationKind = "direct"
    participant_ids: List[str]
    initiator_role: str = "owner"


class MessageCreate(BaseModel):

    content: str
    kind: MessageKind = "text"
    metadata: Optional[Dict[str, Any]] = None
    client_message_id: Optional[str] = None


class ParticipantIn(BaseModel):

    user_id: str
    role: str = "member"


class ParticipantsAdd(BaseModel):

    participants: List[ParticipantIn]


class MarkReadRequest(BaseModel):

    message_ids: List[str]


class BroadcastCreate(BaseModel):

    title: str
    content: str
    user_ids: List[str]
    metadata: Optional[Dict[str, Any]] = None


class OrderItem(BaseModel):

    name: str
    quantity: int = Field(ge=1)
    price: float


class OrderConfirmationCreate(BaseModel):

    order_id: str
    user_id: str
    items: List[OrderItem]
    total: float


def message_to_json(message: Dict[str, Any]) -> Dict[str, Any]:
    return MessageOut.model_validate(message).model_dump(mode="json", by_alias=True)


def encode_message(message: Dict[str, Any]) -> str:
    """Wire form of a message on the change-feed."""
    return MessageOut.model_validate(message).model_dump_json(by_alias=True)


def decode_message(data: str) -> Dict[str, Any]:
    return MessageOut.model_validate_json(data).model_dump(by_alias=True)
