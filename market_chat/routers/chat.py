import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from market_chat.exceptions import MessagingError, NotAuthenticated
from market_chat.schemas.messaging import MarkReadRequest, message_to_json
from market_chat.services.chat_service import ConversationService
from market_chat.utils.dependencies import get_conversation_service, get_current_user
from market_chat.utils.security import current_user_from_token


router = APIRouter(prefix="/messages", tags=["chat"])
log = logging.getLogger("market_chat.ws")


@router.post("/read")
async def mark_read(body: MarkReadRequest, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    count = await service.mark_read(current_user["_id"], body.message_ids)
    return {"updated": count}


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket, service: ConversationService = Depends(get_conversation_service)):
    # token travels as ?token=... since browsers cannot set headers on a WS handshake
    try:
        user = current_user_from_token(websocket.query_params.get("token"))
    except NotAuthenticated:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    user_id = user["_id"]

    async def send(frame: dict) -> None:
        await websocket.send_text(json.dumps(frame))

    async def forward(message: dict) -> None:
        await send({"type": "message", "message": message_to_json(message)})

    async def lost(exc) -> None:
        await send({"type": "channel_lost", "conversation_id": exc.conversation_id, "last_seq": exc.last_seq})

    session = service.open_viewer(user_id, on_message=forward, on_lost=lost)
    try:
        async with session:
            while True:
                data = await websocket.receive_text()
                try:
                    frame = json.loads(data)
                except ValueError:
                    await send({"type": "error", "detail": "Invalid JSON frame"})
                    continue
                if not isinstance(frame, dict):
                    await send({"type": "error", "detail": "Frame must be an object"})
                    continue
                # Expect frame = {"type": "open"|"send"|"close", ...}
                try:
                    kind = frame.get("type")
                    if kind == "open":
                        items = await session.open(frame.get("conversation_id") or "")
                        items = await service.with_sender_names(items)
                        await send({
                            "type": "history",
                            "conversation_id": session.conversation_id,
                            "items": [message_to_json(m) for m in items],
                        })
                    elif kind == "send":
                        message = await session.send(
                            frame.get("content"),
                            kind=frame.get("kind") or "text",
                            metadata=frame.get("metadata"),
                            client_message_id=frame.get("client_message_id"),
                        )
                        await send({
                            "type": "ack",
                            "client_message_id": message.get("client_message_id"),
                            "message": message_to_json(message),
                        })
                    elif kind == "close":
                        await session.close()
                    else:
                        await send({"type": "error", "detail": f"Unknown frame type: {kind!r}"})
                except MessagingError as exc:
                    await send({"type": "error", "detail": str(exc)})
    except WebSocketDisconnect:
        log.info("User %s disconnected", user_id)
