"""Shared fixtures: in-memory Mongo, a fresh presence registry per test, tokens."""
from contextlib import asynccontextmanager

import jwt
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from pairchat.core.config import settings
from pairchat.database.connection import mongo_db_dependency
from pairchat.main import create_app
from pairchat.realtime.matchmaker import AnonymousMatchmaker, get_matchmaker
from pairchat.realtime.presence import PresenceRegistry, get_presence_registry
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.chat_service import ChatService
from pairchat.utils.locks import KeyedLock


@asynccontextmanager
async def _no_lifespan(app):
    # the in-memory database is injected per test instead
    yield


@pytest.fixture
def db():
    return AsyncMongoMockClient()["pairchat_test"]


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def matchmaker(registry):
    return AnonymousMatchmaker(registry, label="Stranger")


@pytest.fixture
def chat_service(db, registry):
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        UserRepository(db),
        registry,
        locks=KeyedLock(),
    )


@pytest.fixture
def token_for():
    def _token(user_id: str, **claims) -> str:
        return jwt.encode({"sub": user_id, **claims}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return _token


@pytest.fixture
def auth_headers(token_for):
    def _headers(user_id: str, **claims) -> dict:
        return {"Authorization": f"Bearer {token_for(user_id, **claims)}"}
    return _headers


@pytest.fixture
def api_client(db, registry, matchmaker):
    """TestClient sharing one event loop between HTTP calls and websockets.

    Entering the client keeps a single portal open, so REST handlers and
    socket handlers touch the registry from the same loop, as in production.
    """
    app = create_app(lifespan_handler=_no_lifespan)
    app.dependency_overrides[mongo_db_dependency] = lambda: db
    app.dependency_overrides[get_presence_registry] = lambda: registry
    app.dependency_overrides[get_matchmaker] = lambda: matchmaker
    with TestClient(app) as client:
        yield client
