from typing import Dict, Iterable

from bson import ObjectId

from pairchat.core.errors import NotFoundError
from pairchat.repositories.conversation_repository import ConversationRepository


class UnreadCounter:

    def __init__(self, conversation_repo: ConversationRepository) -> None:
        self._conversation_repo = conversation_repo

    @staticmethod
    def increment_fields(participants: Iterable[str], exclude_participant: str) -> Dict[str, int]:
        """$inc document for a new message, folded into the append update."""
        return {f"unread_counts.{p}": 1 for p in participants if p != exclude_participant}

    async def increment(self, conversation_id: ObjectId, exclude_participant: str) -> None:
        convo = await self._conversation_repo.get(conversation_id)
        if not convo:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        await self._conversation_repo.increment_unread(
            conversation_id, self.increment_fields(convo["participants"], exclude_participant)
        )

    async def reset(self, conversation_id: ObjectId, participant: str) -> None:
        await self._conversation_repo.reset_unread(conversation_id, participant)
