from datetime import datetime
from typing import Optional, TypedDict

from bson import ObjectId


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: ObjectId
    sender_id: str
    # None for group messages
    receiver_id: Optional[str]
    content: str
    created_at: datetime
    # idempotency key for resends
    client_message_id: str
