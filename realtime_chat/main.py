"""Real-time messaging backend.

REST endpoints persist conversations and messages in MongoDB; the WebSocket
channel at ``/ws`` relays message, typing and read-receipt events between
connected clients through one in-process ``DeliveryHub``.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from realtime_chat.config import Settings, get_settings
from realtime_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from realtime_chat.errors import ChatError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.routers.conversations import router as conversations_router
from realtime_chat.routers.messages import router as messages_router
from realtime_chat.routers.presence import router as presence_router
from realtime_chat.routers.realtime import router as realtime_router
from realtime_chat.utils.delivery_hub import DeliveryHub


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_to_mongo()
    db = get_database()
    await MessageRepository(db).ensure_indexes()
    await ConversationRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await close_mongo_connection()


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    detail = ", ".join(f for f in fields if f) or "request"
    return JSONResponse(status_code=400, content={"error": f"Invalid or missing field(s): {detail}"})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    configured_level = getattr(logging, settings.log_level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)

    app = FastAPI(title="Realtime Chat", lifespan=lifespan)
    # one hub for the whole process lifetime, handed to routes via app.state
    app.state.hub = DeliveryHub()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(presence_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "connectedUsers": len(app.state.hub.rooms)}

    logger.info("Application created (db=%s)", settings.mongo_db_name)
    return app


app = create_app()
