from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from market_chat.database.connection import mongo_db_dependency
from market_chat.services.chat_service import ConversationService
from market_chat.utils.realtime_bus import get_bus
from market_chat.utils.security import current_user_from_token

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict[str, Any]:
    return current_user_from_token(credentials.credentials if credentials else None)


async def get_conversation_service(db=Depends(mongo_db_dependency)) -> ConversationService:
    bus = await get_bus()
    return ConversationService.from_database(db, bus)
