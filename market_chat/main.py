import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from market_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from market_chat.exceptions import (
    ConversationNotFound,
    CreateConversationFailed,
    NotAParticipant,
    NotAuthenticated,
    TransientStoreError,
    ValidationError,
)
from market_chat.logging_config import setup_logging
from market_chat.routers.broadcasts import router as broadcasts_router
from market_chat.routers.chat import router as chat_router
from market_chat.routers.conversations import router as conversations_router
from market_chat.services.chat_service import ConversationService
from market_chat.utils.realtime_bus import close_bus, get_bus

log = logging.getLogger("market_chat.app")


@asynccontextmanager
async def lifespan(app: FastAPI):

    setup_logging()
    db = await connect_to_mongo()
    await ConversationService.ensure_indexes(db)
    await get_bus()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Marketplace messaging", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(broadcasts_router)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(NotAParticipant)
async def not_a_participant_handler(request: Request, exc: NotAParticipant):
    return _error(403, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
    return JSONResponse(status_code=401, content={"detail": str(exc)}, headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(ConversationNotFound)
async def not_found_handler(request: Request, exc: ConversationNotFound):
    return _error(404, exc)


@app.exception_handler(TransientStoreError)
async def transient_handler(request: Request, exc: TransientStoreError):
    log.warning("Store unavailable on %s: %s", request.url.path, exc)
    return _error(503, exc)


@app.exception_handler(CreateConversationFailed)
async def create_failed_handler(request: Request, exc: CreateConversationFailed):
    log.error("%s", exc)
    return _error(500, exc)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
