"""Finding the one conversation a set of participants should talk in.

``resolve_direct`` is a read-then-create sequence and is not atomic: two
concurrent calls for the same pair can both miss and both insert. The unique
index on ``direct_key`` stops that where the store enforces it; where it does
not (older records, stores without partial indexes) the duplicates are merged
on the next read into the record holding the most messages.
"""
import logging
from collections import Counter
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from pairchat.core.errors import ConsistencyViolation, InvalidGroupError, NotFoundError, ValidationError
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.utils.locks import KeyedLock, conversation_locks
from pairchat.utils.mongo import as_utc, is_field_safe, to_object_id


logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


class ConversationResolver:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        locks: KeyedLock = conversation_locks,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._locks = locks

    async def load(self, conversation_id: Any) -> Dict[str, Any]:
        oid = to_object_id(conversation_id, "Conversation")
        convo = await self._conversation_repo.get(oid)
        if not convo:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return convo

    async def resolve_direct(self, user_a: str, user_b: str) -> Dict[str, Any]:
        if not user_a or not user_b:
            raise ValidationError("Both participants are required")
        if user_a == user_b:
            raise ValidationError("Cannot open a conversation with yourself")
        if not (is_field_safe(user_a) and is_field_safe(user_b)):
            raise ValidationError("Invalid user id")
        try:
            return await self._lookup(user_a, user_b) or await self._create(user_a, user_b)
        except ConsistencyViolation as exc:
            logger.warning("%s, merging", exc)
            merged = await self._merge(exc.records)
        if merged is None:
            # every record vanished under a concurrent merge; start over
            return await self._lookup(user_a, user_b) or await self._create(user_a, user_b)
        return merged

    async def create_group(self, creator: str, members: List[str], name: str) -> Dict[str, Any]:
        title = (name or "").strip()
        if not title:
            raise ValidationError("Group name is required")
        others = [m for m in dict.fromkeys(members) if m and m != creator]
        if not all(is_field_safe(m) for m in [creator] + others):
            raise ValidationError("Invalid user id")
        if len(others) < 2:
            raise InvalidGroupError("A group needs at least 2 members besides its creator")
        convo = await self._conversation_repo.create_group(creator, [creator] + others, title)
        logger.info("Created group %s (%d participants)", convo["_id"], len(others) + 1)
        return convo

    async def _lookup(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        records = await self._conversation_repo.find_direct(user_a, user_b)
        if len(records) > 1:
            raise ConsistencyViolation(sorted([user_a, user_b]), records)
        return records[0] if records else None

    async def _create(self, user_a: str, user_b: str) -> Dict[str, Any]:
        try:
            convo = await self._conversation_repo.create_direct(user_a, user_b)
        except DuplicateKeyError:
            # lost the race to a concurrent creator
            existing = await self._lookup(user_a, user_b)
            if existing is None:
                raise
            return existing
        logger.info("Created direct conversation %s", convo["_id"])
        return convo

    @staticmethod
    def _pick_main(records: List[Dict[str, Any]]) -> Dict[str, Any]:
        return min(
            records,
            key=lambda c: (-len(c.get("message_refs", [])), as_utc(c["created_at"]), c["_id"]),
        )

    async def _merge(self, records: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        ids: List[ObjectId] = sorted(r["_id"] for r in records)
        async with AsyncExitStack() as stack:
            # sorted acquisition order, so two merges cannot deadlock
            for cid in ids:
                await stack.enter_async_context(self._locks.hold(str(cid)))

            fresh = []
            for cid in ids:
                doc = await self._conversation_repo.get(cid)
                if doc:
                    fresh.append(doc)
            if not fresh:
                return None
            main = self._pick_main(fresh)
            duplicates = [c for c in fresh if c["_id"] != main["_id"]]
            if not duplicates:
                return main

            refs = list(dict.fromkeys(
                ref for convo in [main] + duplicates for ref in convo.get("message_refs", [])
            ))
            messages = await self._message_repo.get_many(refs)
            ordered = [m["_id"] for m in messages]
            known = set(ordered)
            ordered.extend(ref for ref in refs if ref not in known)

            unread: Counter = Counter()
            for convo in [main] + duplicates:
                unread.update(convo.get("unread_counts", {}))
            updated_at = max(as_utc(c["updated_at"]) for c in fresh)
            preview = messages[-1]["content"][:PREVIEW_LENGTH] if messages else main.get("last_message_preview")

            await self._conversation_repo.replace_merged(main["_id"], ordered, dict(unread), updated_at, preview)
            deleted = await self._conversation_repo.delete_many(c["_id"] for c in duplicates)
            logger.warning(
                "Merged %d duplicate(s) into conversation %s: %d messages, %d records deleted",
                len(duplicates), main["_id"], len(ordered), deleted,
            )
            main.update(
                message_refs=ordered,
                unread_counts=dict(unread),
                updated_at=updated_at,
                last_message_preview=preview,
            )
            return main
