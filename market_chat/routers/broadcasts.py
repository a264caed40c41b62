from fastapi import APIRouter, Depends

from market_chat.schemas.messaging import BroadcastCreate, OrderConfirmationCreate, message_to_json
from market_chat.services.chat_service import ConversationService
from market_chat.utils.dependencies import get_conversation_service, get_current_user


router = APIRouter(prefix="/broadcasts", tags=["broadcasts"])


@router.post("/announcements", status_code=201)
async def send_announcement(body: BroadcastCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    message = await service.send_announcement(current_user["_id"], body.title, body.content, body.user_ids, body.metadata)
    return message_to_json(message)


@router.post("/promotions", status_code=201)
async def send_promotion(body: BroadcastCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    message = await service.send_promotion(current_user["_id"], body.title, body.content, body.user_ids, body.metadata)
    return message_to_json(message)


@router.post("/order-confirmations", status_code=201)
async def send_order_confirmation(body: OrderConfirmationCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    details = {"items": [item.model_dump() for item in body.items], "total": body.total}
    message = await service.send_order_confirmation(current_user["_id"], body.order_id, body.user_id, details)
    return message_to_json(message)
