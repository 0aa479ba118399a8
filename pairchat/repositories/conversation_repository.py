from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from pairchat.models.conversation import ConversationDocument
from pairchat.utils.mongo import encode_cursor, older_than


def direct_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING), ("_id", DESCENDING)])
        await self.collection.create_index(
            [("direct_key", ASCENDING)],
            unique=True,
            # records from before direct_key existed stay out of the index
            partialFilterExpression={"is_group": False, "direct_key": {"$exists": True}},
        )

    async def get(self, conversation_id: ObjectId) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def find_direct(self, user_a: str, user_b: str) -> List[ConversationDocument]:
        # participants-based rather than direct_key so records created before
        # the key existed are still found
        cursor = self.collection.find(
            {"is_group": False, "participants": {"$all": [user_a, user_b], "$size": 2}}
        ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return await cursor.to_list(length=None)

    async def create_direct(self, user_a: str, user_b: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: ConversationDocument = {
            "participants": sorted([user_a, user_b]),
            "is_group": False,
            "direct_key": direct_key(user_a, user_b),
            "message_refs": [],
            "unread_counts": {user_a: 0, user_b: 0},
            "last_message_preview": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def create_group(self, admin: str, participants: List[str], name: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: ConversationDocument = {
            "participants": participants,
            "is_group": True,
            "group_name": name,
            "group_admin": admin,
            "message_refs": [],
            "unread_counts": {p: 0 for p in participants},
            "last_message_preview": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def append_message(
        self,
        conversation_id: ObjectId,
        message_id: ObjectId,
        preview: str,
        unread_increments: Dict[str, int],
    ) -> bool:
        """Append a message reference and bump unread counters in one update.

        Returns False when the reference is already present or the
        conversation no longer exists; callers tell the two apart with get().
        """
        update: Dict[str, Any] = {
            "$push": {"message_refs": message_id},
            "$set": {
                "updated_at": datetime.now(timezone.utc),
                "last_message_preview": preview,
            },
        }
        if unread_increments:
            update["$inc"] = unread_increments
        result = await self.collection.update_one(
            {"_id": conversation_id, "message_refs": {"$ne": message_id}},
            update,
        )
        return result.modified_count > 0

    async def increment_unread(self, conversation_id: ObjectId, increments: Dict[str, int]) -> None:
        if not increments:
            return
        await self.collection.update_one({"_id": conversation_id}, {"$inc": increments})

    async def reset_unread(self, conversation_id: ObjectId, user_id: str) -> None:
        await self.collection.update_one(
            {"_id": conversation_id},
            {"$set": {f"unread_counts.{user_id}": 0}},
        )

    async def replace_merged(
        self,
        conversation_id: ObjectId,
        message_refs: List[ObjectId],
        unread_counts: Dict[str, int],
        updated_at: datetime,
        preview: Optional[str],
    ) -> None:
        await self.collection.update_one(
            {"_id": conversation_id},
            {
                "$set": {
                    "message_refs": message_refs,
                    "unread_counts": unread_counts,
                    "updated_at": updated_at,
                    "last_message_preview": preview,
                }
            },
        )

    async def delete_many(self, conversation_ids: Iterable[ObjectId]) -> int:
        result = await self.collection.delete_many({"_id": {"$in": list(conversation_ids)}})
        return result.deleted_count or 0

    async def list_group_ids_for_user(self, user_id: str) -> List[str]:
        cursor = self.collection.find({"participants": user_id, "is_group": True}, {"_id": 1})
        return [str(doc["_id"]) async for doc in cursor]

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        query.update(older_than("updated_at", cursor))
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        items = await self.collection.find(query).sort(sort).limit(limit).to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last["updated_at"], last["_id"])
        return items, next_cursor
