from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from support_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from support_chat.exceptions import ChatError, ValidationError
from support_chat.repositories.conversation_repository import ConversationRepository
from support_chat.routers.chat import router as chat_router
from support_chat.routers.conversations import router as conversations_router
from support_chat.routers.presence import router as presence_router
from support_chat.services.delivery import DeliveryService
from support_chat.utils.logging import setup_logging
from support_chat.utils.realtime_bus import get_bus
from support_chat.utils.websocket_manager import ConnectionManager


@asynccontextmanager
async def lifespan(app: FastAPI):

    setup_logging()
    await connect_to_mongo()
    await ConversationRepository(get_database()).ensure_indexes()
    app.state.bus = await get_bus()
    app.state.connections = ConnectionManager()
    app.state.delivery = DeliveryService(app.state.connections, app.state.bus)
    await app.state.delivery.start_relay()
    try:
        yield
    finally:
        await app.state.delivery.stop_relay()
        await app.state.bus.close()
        await close_mongo_connection()


async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = {}
    for err in exc.errors():
        # drop the leading "body"/"query" location
        loc = [str(part) for part in err.get("loc", ())][1:]
        details.setdefault(".".join(loc) or "request", []).append(err.get("msg", "invalid"))
    return await chat_error_handler(request, ValidationError("Validation failed", details=details))


async def health():

    db = get_database()
    await db.command("ping")
    return {"status": "healthy"}


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(title="Agency support chat", lifespan=lifespan_handler)
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(conversations_router)
    app.include_router(presence_router)
    app.include_router(chat_router)
    app.add_api_route("/health", health, methods=["GET"])
    return app


app = create_app()
