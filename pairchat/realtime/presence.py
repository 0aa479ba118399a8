"""Presence registry: live sessions, the rooms they sit in, targeted emission.

Every method here is synchronous. On a single event loop that makes each call
atomic with respect to every other handler, which is what keeps room
membership consistent under connect/disconnect churn.

Delivery goes through a per-session outbox drained by one pump task, so
frames emitted to the same session arrive in emission order.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRoom:
    user_id: str


@dataclass(frozen=True)
class ConversationRoom:
    conversation_id: str


@dataclass(frozen=True)
class AnonymousRoom:
    token: str


RoomKey = Union[UserRoom, ConversationRoom, AnonymousRoom]

Frame = Dict[str, Any]


class Session:

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.user_id: Optional[str] = None
        self.rooms: Set[RoomKey] = set()
        self.outbox: "asyncio.Queue[Frame]" = asyncio.Queue()
        self.closed = False

    def deliver(self, event: Union[str, Enum], payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        name = event.value if isinstance(event, Enum) else event
        self.outbox.put_nowait({"event": name, "data": payload})

    async def pump(self, send: Callable[[Frame], Awaitable[None]]) -> None:
        """Drain the outbox onto the transport until cancelled or it fails."""
        while True:
            frame = await self.outbox.get()
            try:
                await send(frame)
            except Exception as exc:
                # fan-out is best effort; the emitter never sees this
                logger.warning("Dropping session %s after send failure: %r", self.session_id, exc)
                self.closed = True
                return


class PresenceRegistry:

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._rooms: Dict[RoomKey, Set[str]] = {}

    def connect(self, session_id: Optional[str] = None) -> Session:
        session = Session(session_id or uuid.uuid4().hex)
        self._sessions[session.session_id] = session
        logger.info("Session %s connected", session.session_id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def bind(self, session_id: str, user_id: str) -> Session:
        session = self._sessions[session_id]
        if session.user_id and session.user_id != user_id:
            self.leave_room(session_id, UserRoom(session.user_id))
        session.user_id = user_id
        self.join(session_id, UserRoom(user_id))
        return session

    def join(self, session_id: str, room: RoomKey) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if room in session.rooms:
            return False
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(session_id)
        logger.debug("Session %s joined %s", session_id, room)
        return True

    def leave_room(self, session_id: str, room: RoomKey) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.rooms.discard(room)
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self._rooms[room]

    def leave(self, session_id: str) -> List[RoomKey]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        rooms = list(session.rooms)
        for room in rooms:
            self.leave_room(session_id, room)
        return rooms

    def disconnect(self, session_id: str) -> Optional[Session]:
        rooms = self.leave(session_id)
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.closed = True
            logger.info("Session %s disconnected (released %d rooms)", session_id, len(rooms))
        return session

    def emit(
        self,
        room: RoomKey,
        event: Union[str, Enum],
        payload: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        delivered = 0
        for session_id in list(self._rooms.get(room, ())):
            if session_id == exclude:
                continue
            self._sessions[session_id].deliver(event, payload)
            delivered += 1
        return delivered

    def send(self, session_id: str, event: Union[str, Enum], payload: Dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.deliver(event, payload)
        return True

    def room_size(self, room: RoomKey) -> int:
        return len(self._rooms.get(room, ()))

    def members(self, room: RoomKey) -> List[str]:
        return list(self._rooms.get(room, ()))

    def is_online(self, user_id: str) -> bool:
        return self.room_size(UserRoom(user_id)) > 0

    def join_room_members(self, source: RoomKey, target: RoomKey) -> int:
        """Join every session currently in ``source`` to ``target``."""
        return sum(1 for session_id in self.members(source) if self.join(session_id, target))

    def __len__(self) -> int:
        return len(self._sessions)


registry = PresenceRegistry()


def get_presence_registry() -> PresenceRegistry:
    return registry
