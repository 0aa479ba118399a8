from datetime import datetime
from typing import Dict, List, Optional, TypedDict

from bson import ObjectId


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    participants: List[str]
    is_group: bool
    # sorted "a:b" pair, direct conversations only (unique partial index)
    direct_key: str
    group_name: Optional[str]
    group_admin: Optional[str]
    # append-only, send order
    message_refs: List[ObjectId]
    # per-user unread counters (user_id -> count)
    unread_counts: Dict[str, int]
    last_message_preview: Optional[str]
    created_at: datetime
    updated_at: datetime
