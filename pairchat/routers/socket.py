import asyncio
import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from pairchat.core.config import settings
from pairchat.core.errors import AppError, NotMemberError, ValidationError
from pairchat.realtime.matchmaker import AnonymousMatchmaker, get_matchmaker
from pairchat.realtime.presence import ConversationRoom, PresenceRegistry, Session, UserRoom, get_presence_registry
from pairchat.realtime.presence_cache import get_presence_cache
from pairchat.schemas.events import (
    JoinEvent,
    OutboundEvent,
    RelayAnonymousEvent,
    SendMessageEvent,
    StartAnonymousEvent,
    StopAnonymousEvent,
    TypingEvent,
    inbound_adapter,
)
from pairchat.services.chat_service import ChatService
from pairchat.utils.dependencies import get_chat_service
from pairchat.utils.security import decode_access_token, identity_from_claims


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class RealtimeConnection:
    """Inbound event handling for one websocket session."""

    def __init__(
        self,
        identity: Dict[str, Any],
        session: Session,
        service: ChatService,
        registry: PresenceRegistry,
        matchmaker: AnonymousMatchmaker,
    ) -> None:
        self.identity = identity
        self.session = session
        self.service = service
        self.registry = registry
        self.matchmaker = matchmaker
        self.heartbeat: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def reply(self, event: OutboundEvent, payload: Dict[str, Any]) -> None:
        self.registry.send(self.session_id, event, payload)

    async def handle(self, event: Any) -> None:
        if isinstance(event, JoinEvent):
            await self.join(event.user_id)
        elif isinstance(event, StartAnonymousEvent):
            self.matchmaker.start(self.session_id)
        elif isinstance(event, StopAnonymousEvent):
            self.matchmaker.stop(self.session_id)
        elif isinstance(event, RelayAnonymousEvent):
            self.matchmaker.relay(self.session_id, event.room_id, event.content)
        elif isinstance(event, SendMessageEvent):
            message = await self.service.send_message(
                self.identity,
                event.content,
                receiver_id=event.receiver_id,
                conversation_id=event.conversation_id,
                client_message_id=event.client_message_id,
            )
            self.reply(OutboundEvent.MESSAGE_SENT, message.model_dump(mode="json"))
        elif isinstance(event, TypingEvent):
            self.typing(event)

    async def join(self, user_id: str) -> None:
        if user_id != self.identity["_id"]:
            raise NotMemberError("Cannot join another user's room")
        self.registry.bind(self.session_id, user_id)
        group_ids = await self.service.group_ids_for(user_id)
        for conversation_id in group_ids:
            self.registry.join(self.session_id, ConversationRoom(conversation_id))
        if self.heartbeat is None and get_presence_cache().enabled:
            self.heartbeat = asyncio.create_task(self._presence_heartbeat(user_id))
        self.reply(OutboundEvent.JOINED, {"userId": user_id, "conversations": group_ids})

    def typing(self, event: TypingEvent) -> None:
        payload = {
            "from": self.identity["_id"],
            "conversationId": event.conversation_id,
            "isTyping": event.is_typing,
        }
        if event.conversation_id:
            room = ConversationRoom(event.conversation_id)
            if room not in self.session.rooms:
                raise NotMemberError("Join the conversation before typing in it")
            self.registry.emit(room, OutboundEvent.TYPING, payload, exclude=self.session_id)
        elif event.receiver_id:
            self.registry.emit(UserRoom(event.receiver_id), OutboundEvent.TYPING, payload)
        else:
            raise ValidationError("Provide receiverId or conversationId")

    async def _presence_heartbeat(self, user_id: str) -> None:
        cache = get_presence_cache()
        ttl = settings.PRESENCE_TTL_SECONDS
        while True:
            try:
                await cache.set_online(user_id, ttl_seconds=ttl)
            except RedisError as exc:
                logger.warning("Presence heartbeat for %s failed: %s", user_id, exc)
            await asyncio.sleep(ttl / 2)

    async def close(self) -> None:
        user_id = self.session.user_id
        self.matchmaker.disconnect(self.session_id)
        self.registry.disconnect(self.session_id)
        if self.heartbeat is not None:
            self.heartbeat.cancel()
        if user_id and not self.registry.is_online(user_id):
            try:
                await get_presence_cache().set_offline(user_id)
            except RedisError as exc:
                logger.warning("Could not clear presence for %s: %s", user_id, exc)


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    service: ChatService = Depends(get_chat_service),
    registry: PresenceRegistry = Depends(get_presence_registry),
    matchmaker: AnonymousMatchmaker = Depends(get_matchmaker),
):
    # JWT over ?token=..., browsers cannot set headers on websockets
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        identity = identity_from_claims(decode_access_token(token))
    except jwt.PyJWTError:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    session = registry.connect()
    pump = asyncio.create_task(session.pump(websocket.send_json))
    connection = RealtimeConnection(identity, session, service, registry, matchmaker)
    connection.reply(OutboundEvent.CONNECTED, {"sessionId": session.session_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                event = inbound_adapter.validate_json(raw)
            except PydanticValidationError as exc:
                connection.reply(OutboundEvent.ERROR, {
                    "detail": "Invalid event payload",
                    "errors": exc.errors(include_url=False, include_context=False),
                })
                continue
            try:
                await connection.handle(event)
            except AppError as exc:
                connection.reply(OutboundEvent.ERROR, {"type": event.type, "detail": exc.to_detail()})
    except WebSocketDisconnect:
        logger.debug("Session %s closed by client", session.session_id)
    finally:
        await connection.close()
        pump.cancel()
