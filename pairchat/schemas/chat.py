from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DirectConversationCreate(BaseModel):

    peer_id: str = Field(min_length=1)


class GroupConversationCreate(BaseModel):

    name: str
    member_ids: List[str]


class MessageCreate(BaseModel):

    # exactly one of receiver_id / conversation_id; checked by ChatService
    receiver_id: Optional[str] = None
    conversation_id: Optional[str] = None
    content: str
    client_message_id: Optional[str] = Field(default=None, max_length=128)


class Profile(BaseModel):

    id: str
    username: Optional[str] = None
    avatar: Optional[str] = None


class MessageOut(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    content: str
    created_at: datetime
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc.get("receiver_id"),
            content=doc["content"],
            created_at=doc["created_at"],
            client_message_id=doc.get("client_message_id"),
        )


class MessageEvent(MessageOut):
    """What live sessions receive: the message plus display data."""

    sender: Profile
    receiver: Optional[Profile] = None


class ConversationOut(BaseModel):

    id: str
    participants: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    group_admin: Optional[str] = None
    message_ids: List[str] = []
    unread_counts: Dict[str, int] = {}
    last_message_preview: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationOut":
        return cls(
            id=str(doc["_id"]),
            participants=list(doc.get("participants", [])),
            is_group=bool(doc.get("is_group", False)),
            group_name=doc.get("group_name"),
            group_admin=doc.get("group_admin"),
            message_ids=[str(m) for m in doc.get("message_refs", [])],
            unread_counts=dict(doc.get("unread_counts", {})),
            last_message_preview=doc.get("last_message_preview"),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


class ConversationSummary(BaseModel):

    id: str
    participants: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    last_message_preview: Optional[str] = None
    unread_count: int = 0
    updated_at: datetime

    @classmethod
    def for_user(cls, doc: Dict[str, Any], user_id: str) -> "ConversationSummary":
        return cls(
            id=str(doc["_id"]),
            participants=list(doc.get("participants", [])),
            is_group=bool(doc.get("is_group", False)),
            group_name=doc.get("group_name"),
            last_message_preview=doc.get("last_message_preview"),
            unread_count=doc.get("unread_counts", {}).get(user_id, 0),
            updated_at=doc["updated_at"],
        )
