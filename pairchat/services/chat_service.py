import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from pairchat.core.errors import InvalidMessageError, NotMemberError, PartialWriteError, ValidationError
from pairchat.realtime.presence import ConversationRoom, PresenceRegistry, UserRoom
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.chat import ConversationOut, ConversationSummary, MessageEvent, MessageOut, Profile
from pairchat.schemas.events import OutboundEvent
from pairchat.services.conversation_resolver import PREVIEW_LENGTH, ConversationResolver
from pairchat.services.unread_counter import UnreadCounter
from pairchat.utils.locks import KeyedLock, conversation_locks


logger = logging.getLogger(__name__)


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        registry: PresenceRegistry,
        locks: KeyedLock = conversation_locks,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._registry = registry
        self._locks = locks
        self.resolver = ConversationResolver(conversation_repo, message_repo, locks)
        self.unread = UnreadCounter(conversation_repo)

    async def open_direct(self, user_id: str, peer_id: str) -> ConversationOut:
        convo = await self.resolver.resolve_direct(user_id, peer_id)
        return ConversationOut.from_document(convo)

    async def create_group(self, creator: str, member_ids: List[str], name: str) -> ConversationOut:
        convo = await self.resolver.create_group(creator, member_ids, name)
        room = ConversationRoom(str(convo["_id"]))
        joined = sum(self._registry.join_room_members(UserRoom(p), room) for p in convo["participants"])
        logger.debug("Joined %d live sessions to group %s", joined, convo["_id"])
        return ConversationOut.from_document(convo)

    async def get_conversation(self, user_id: str, conversation_id: str) -> ConversationOut:
        convo = await self._load_for_member(user_id, conversation_id)
        return ConversationOut.from_document(convo)

    async def send_message(
        self,
        sender: Dict[str, Any],
        content: str,
        receiver_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageOut:
        """Persist a message, append it to its conversation, then fan it out.

        ``sender`` is the verified identity from the auth layer
        (``_id`` plus optional ``username``/``avatar``). Delivery to live
        sessions is best effort; only persistence is guaranteed.
        """
        sender_id = sender["_id"]
        text = (content or "").strip()
        if not text:
            raise InvalidMessageError("Message content cannot be empty")
        if bool(receiver_id) == bool(conversation_id):
            raise ValidationError("Provide exactly one of receiver_id or conversation_id")
        client_message_id = client_message_id or uuid.uuid4().hex

        if receiver_id:
            convo = await self.resolver.resolve_direct(sender_id, receiver_id)
        else:
            convo = await self._load_for_member(sender_id, conversation_id)

        saved, current = await self._persist(convo, sender_id, text, client_message_id)
        if current is None and not convo.get("is_group"):
            # merged away between resolve and append; the resend path reuses
            # the stored message and appends it to the canonical record
            convo = await self.resolver.resolve_direct(sender_id, self._peer_of(convo, sender_id))
            saved, current = await self._persist(convo, sender_id, text, client_message_id)
        if current is None:
            raise PartialWriteError(
                "Message stored but its conversation is gone; resend to retry",
                message_id=str(saved["_id"]),
                conversation_id=str(convo["_id"]),
                client_message_id=client_message_id,
            )

        # the stored conversation_id can predate a merge; report the canonical one
        saved = dict(saved, conversation_id=current["_id"])
        try:
            await self._fan_out(current, saved, sender)
        except PyMongoError as exc:
            # the message is stored; live delivery is best effort
            logger.warning("Fan-out of message %s failed: %s", saved["_id"], exc)
        return MessageOut.from_document(saved)

    async def get_history(self, user_id: str, conversation_id: str, limit: int = 50, cursor: Optional[str] = None) -> Tuple[List[MessageOut], Optional[str]]:
        convo = await self._load_for_member(user_id, conversation_id)
        items, next_cursor = await self._message_repo.get_page(convo.get("message_refs", []), limit=limit, cursor=cursor)
        return [MessageOut.from_document(m) for m in items], next_cursor

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationSummary], Optional[str]]:
        items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        return [ConversationSummary.for_user(c, user_id) for c in items], next_cursor

    async def mark_read(self, user_id: str, conversation_id: str) -> None:
        convo = await self._load_for_member(user_id, conversation_id)
        await self.unread.reset(convo["_id"], user_id)

    async def group_ids_for(self, user_id: str) -> List[str]:
        return await self._conversation_repo.list_group_ids_for_user(user_id)

    async def _load_for_member(self, user_id: str, conversation_id: Any) -> Dict[str, Any]:
        convo = await self.resolver.load(conversation_id)
        if user_id not in convo.get("participants", []):
            raise NotMemberError("You are not a participant of this conversation")
        return convo

    @staticmethod
    def _peer_of(convo: Dict[str, Any], user_id: str) -> Optional[str]:
        if convo.get("is_group"):
            return None
        others = [p for p in convo["participants"] if p != user_id]
        return others[0] if others else None

    @staticmethod
    def _belongs_to(message: Dict[str, Any], convo: Dict[str, Any]) -> bool:
        if message.get("conversation_id") == convo["_id"]:
            return True
        if convo.get("is_group"):
            return False
        # a merge moves refs to the canonical record without rewriting messages
        pair = {message.get("sender_id"), message.get("receiver_id")}
        return pair == set(convo["participants"])

    async def _persist(
        self,
        convo: Dict[str, Any],
        sender_id: str,
        text: str,
        client_message_id: str,
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Store the message and append it under the conversation's lock.

        Returns ``(message, None)`` when the conversation no longer exists.
        """
        convo_oid = convo["_id"]
        async with self._locks.hold(str(convo_oid)):
            saved = await self._message_repo.find_by_client_id(sender_id, client_message_id)
            if saved is not None:
                if not self._belongs_to(saved, convo):
                    raise ValidationError(
                        f"client_message_id {client_message_id} was already used in another conversation"
                    )
                logger.info("Resend of %s, completing append only", client_message_id)
            else:
                saved = await self._message_repo.save_message(
                    conversation_id=convo_oid,
                    sender_id=sender_id,
                    receiver_id=self._peer_of(convo, sender_id),
                    content=text,
                    client_message_id=client_message_id,
                )
            try:
                appended = await self._conversation_repo.append_message(
                    convo_oid,
                    saved["_id"],
                    text[:PREVIEW_LENGTH],
                    UnreadCounter.increment_fields(convo["participants"], sender_id),
                )
                if not appended:
                    current = await self._conversation_repo.get(convo_oid)
                    if current is None:
                        return saved, None
                    convo = current
            except PyMongoError as exc:
                logger.error("Append of message %s to %s failed: %s", saved["_id"], convo_oid, exc)
                raise PartialWriteError(
                    "Message stored but not yet added to the conversation; resend to retry",
                    message_id=str(saved["_id"]),
                    conversation_id=str(convo_oid),
                    client_message_id=client_message_id,
                ) from exc
        return saved, convo

    async def _fan_out(self, convo: Dict[str, Any], message: Dict[str, Any], sender: Dict[str, Any]) -> int:
        receiver_id = message.get("receiver_id")
        profiles = await self._user_repo.get_profiles([receiver_id] if receiver_id else [])
        event = MessageEvent(
            **MessageOut.from_document(message).model_dump(),
            sender=Profile(id=sender["_id"], username=sender.get("username"), avatar=sender.get("avatar")),
            receiver=Profile(**profiles.get(receiver_id, {"id": receiver_id})) if receiver_id else None,
        )
        if convo.get("is_group"):
            room = ConversationRoom(str(convo["_id"]))
        else:
            room = UserRoom(receiver_id)
        delivered = self._registry.emit(room, OutboundEvent.MESSAGE_RECEIVED, event.model_dump(mode="json"))
        logger.debug("Message %s delivered to %d live sessions", message["_id"], delivered)
        return delivered
