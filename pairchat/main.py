from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pairchat.core.config import settings
from pairchat.core.errors import register_exception_handlers
from pairchat.core.logging import configure_logging
from pairchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from pairchat.realtime.presence_cache import close_presence_cache
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.routers.conversations import router as conversations_router
from pairchat.routers.messages import router as messages_router
from pairchat.routers.presence import router as presence_router
from pairchat.routers.socket import router as socket_router


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await close_presence_cache()
        await close_mongo_connection()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    configure_logging()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(presence_router)
    app.include_router(socket_router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pairchat.main:app", host="0.0.0.0", port=int(settings.PORT), reload=True)
