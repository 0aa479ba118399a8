from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from pairchat.database.connection import mongo_db_dependency
from pairchat.realtime.presence import PresenceRegistry, get_presence_registry
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.chat_service import ChatService
from pairchat.utils.security import decode_access_token, identity_from_claims


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict[str, Any]:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_access_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity_from_claims(payload)


def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    registry: PresenceRegistry = Depends(get_presence_registry),
) -> ChatService:
    return ChatService(MessageRepository(db), ConversationRepository(db), UserRepository(db), registry)
