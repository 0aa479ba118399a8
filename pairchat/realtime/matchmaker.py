"""Anonymous matchmaking.

Sessions that ask for a stranger wait in a FIFO queue; the two earliest are
paired into a fresh room as soon as two are waiting. The queue and the room
table belong to this class alone and no method awaits, so the
check-and-pair step cannot interleave with another enqueue.

Only session ids ever enter the queue. Partners see the room token and a
placeholder label, never a user id.
"""
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Set, Tuple

from pairchat.core.config import settings
from pairchat.core.errors import InvalidMessageError, NotMemberError
from pairchat.realtime.presence import AnonymousRoom, PresenceRegistry, registry
from pairchat.schemas.events import OutboundEvent


logger = logging.getLogger(__name__)


class MatchState(str, Enum):

    IDLE = "idle"
    SEARCHING = "searching"
    MATCHED = "matched"


class AnonymousMatchmaker:

    def __init__(self, registry: PresenceRegistry, label: str = "Stranger") -> None:
        self._registry = registry
        self._label = label
        self._queue: "OrderedDict[str, None]" = OrderedDict()
        # session_id -> room token, for matched sessions only
        self._matched: Dict[str, str] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def state(self, session_id: str) -> MatchState:
        if session_id in self._matched:
            return MatchState.MATCHED
        if session_id in self._queue:
            return MatchState.SEARCHING
        return MatchState.IDLE

    def queue_length(self) -> int:
        return len(self._queue)

    def room_size(self, room_id: str) -> int:
        return self._registry.room_size(AnonymousRoom(room_id))

    def start(self, session_id: str) -> MatchState:
        if session_id in self._matched:
            # "next stranger": leave the current room, then queue again
            self._release(session_id)
        if session_id not in self._queue:
            self._queue[session_id] = None
            self._registry.send(session_id, OutboundEvent.ANONYMOUS_SEARCHING, {"queued": len(self._queue)})
            logger.debug("Session %s searching (queue=%d)", session_id, len(self._queue))
        self._pair_waiting()
        return self.state(session_id)

    def stop(self, session_id: str) -> MatchState:
        previous = self._release(session_id)
        self._registry.send(session_id, OutboundEvent.ANONYMOUS_STOPPED, {"previous": previous.value})
        return previous

    def disconnect(self, session_id: str) -> MatchState:
        return self._release(session_id)

    def relay(self, session_id: str, room_id: str, content: str) -> int:
        if self._matched.get(session_id) != room_id:
            raise NotMemberError("Not a member of this anonymous room")
        text = (content or "").strip()
        if not text:
            raise InvalidMessageError("Message content cannot be empty")
        payload = {
            "roomId": room_id,
            "content": text,
            "senderLabel": self._label,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        # a partner that already left simply receives nothing
        return self._registry.emit(
            AnonymousRoom(room_id),
            OutboundEvent.ANONYMOUS_MESSAGE_RECEIVED,
            payload,
            exclude=session_id,
        )

    def _pair_waiting(self) -> List[Tuple[str, str, str]]:
        pairs = []
        while len(self._queue) >= 2:
            initiator, _ = self._queue.popitem(last=False)
            responder, _ = self._queue.popitem(last=False)
            token = uuid.uuid4().hex
            room = AnonymousRoom(token)
            self._rooms[token] = {initiator, responder}
            for session_id, is_initiator in ((initiator, True), (responder, False)):
                self._matched[session_id] = token
                self._registry.join(session_id, room)
                self._registry.send(
                    session_id,
                    OutboundEvent.ANONYMOUS_MATCHED,
                    {"roomId": token, "isInitiator": is_initiator, "partnerLabel": self._label},
                )
            logger.info("Anonymous room %s opened", token)
            pairs.append((token, initiator, responder))
        return pairs

    def _release(self, session_id: str) -> MatchState:
        if session_id in self._queue:
            del self._queue[session_id]
            logger.debug("Session %s left the queue", session_id)
            return MatchState.SEARCHING
        token = self._matched.pop(session_id, None)
        if token is None:
            return MatchState.IDLE
        self._registry.leave_room(session_id, AnonymousRoom(token))
        members = self._rooms.get(token, set())
        members.discard(session_id)
        # the partner stays in the room until it stops itself
        for partner in members:
            self._registry.send(partner, OutboundEvent.ANONYMOUS_PARTNER_LEFT, {"roomId": token})
        if not members:
            self._rooms.pop(token, None)
            logger.info("Anonymous room %s closed", token)
        return MatchState.MATCHED


matchmaker = AnonymousMatchmaker(registry, label=settings.ANONYMOUS_LABEL)


def get_matchmaker() -> AnonymousMatchmaker:
    return matchmaker
