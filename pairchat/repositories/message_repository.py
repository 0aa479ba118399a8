from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from pairchat.models.message import MessageDocument
from pairchat.utils.mongo import encode_cursor, older_than


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index(
            [("sender_id", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
        )

    async def save_message(
        self,
        conversation_id: ObjectId,
        sender_id: str,
        receiver_id: Optional[str],
        content: str,
        client_message_id: str,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "created_at": datetime.now(timezone.utc),
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def find_by_client_id(self, sender_id: str, client_message_id: str) -> Optional[MessageDocument]:
        return await self.collection.find_one({"sender_id": sender_id, "client_message_id": client_message_id})

    async def get_many(self, message_ids: Iterable[ObjectId]) -> List[MessageDocument]:
        ids = list(message_ids)
        if not ids:
            return []
        cursor = self.collection.find({"_id": {"$in": ids}}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return await cursor.to_list(length=None)

    async def get_page(
        self,
        message_ids: List[ObjectId],
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"_id": {"$in": message_ids}}
        query.update(older_than("created_at", cursor))
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        items = await self.collection.find(query).sort(sort).limit(limit).to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last["created_at"], last["_id"])
        # newest page fetched first, returned in ascending order for the UI
        return list(reversed(items)), next_cursor
