from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from market_chat.schemas.messaging import (
    ConversationCreate,
    ConversationOut,
    InboxEntryOut,
    MessageCreate,
    ParticipantOut,
    ParticipantsAdd,
    message_to_json,
)
from market_chat.services.chat_service import ConversationService
from market_chat.utils.dependencies import get_conversation_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=List[InboxEntryOut])
async def list_conversations(current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.list_conversations(current_user["_id"])


@router.get("/search", response_model=List[InboxEntryOut])
async def search_conversations(q: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.search_conversations(current_user["_id"], q)


@router.post("", response_model=ConversationOut, status_code=201)
async def create_conversation(body: ConversationCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.create_conversation(
        current_user["_id"], body.title, body.kind, body.participant_ids, initiator_role=body.initiator_role
    )


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.get_conversation(conversation_id)


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, after_seq: int = Query(0, ge=0), current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    messages = await service.load_conversation(current_user["_id"], conversation_id, after_seq=after_seq)
    last_seq = messages[-1]["seq"] if messages else after_seq
    return {"items": [message_to_json(m) for m in messages], "last_seq": last_seq}


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(conversation_id: str, body: MessageCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    message = await service.send_message(
        conversation_id,
        current_user["_id"],
        body.content,
        kind=body.kind,
        metadata=body.metadata,
        client_message_id=body.client_message_id,
    )
    return message_to_json(message)


@router.get("/{conversation_id}/participants", response_model=List[ParticipantOut])
async def list_participants(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.list_participants(conversation_id)


@router.post("/{conversation_id}/participants")
async def add_participants(conversation_id: str, body: ParticipantsAdd, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    added = await service.add_participants(conversation_id, [(p.user_id, p.role) for p in body.participants])
    return {"added": added}
