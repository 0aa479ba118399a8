from typing import Any, Dict, Iterable, List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase


class UserRepository:
    """Read-only access to profiles owned by the auth service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid]
        if not ids:
            return {}
        keys: List[Any] = [ObjectId(uid) if ObjectId.is_valid(uid) else uid for uid in ids]
        profiles: Dict[str, Dict[str, Any]] = {}
        async for doc in self._collection.find({"_id": {"$in": keys}}, {"username": 1, "avatar": 1}):
            uid = str(doc["_id"])
            profiles[uid] = {"id": uid, "username": doc.get("username"), "avatar": doc.get("avatar")}
        return profiles
