import pytest

from pairchat.core.errors import NotFoundError
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.services.unread_counter import UnreadCounter


@pytest.fixture
def conversation_repo(db):
    return ConversationRepository(db)


def test_increment_fields_skip_the_sender():
    assert UnreadCounter.increment_fields(["a", "b", "c"], "b") == {
        "unread_counts.a": 1,
        "unread_counts.c": 1,
    }


@pytest.mark.asyncio
async def test_increment_and_reset(conversation_repo):
    counter = UnreadCounter(conversation_repo)
    group = await conversation_repo.create_group("a", ["a", "b", "c"], "abc")

    await counter.increment(group["_id"], "a")
    await counter.increment(group["_id"], "b")
    await counter.reset(group["_id"], "c")

    stored = await conversation_repo.get(group["_id"])
    assert stored["unread_counts"] == {"a": 1, "b": 1, "c": 0}


@pytest.mark.asyncio
async def test_increment_unknown_conversation(conversation_repo):
    counter = UnreadCounter(conversation_repo)
    group = await conversation_repo.create_group("a", ["a", "b", "c"], "abc")
    await conversation_repo.delete_many([group["_id"]])

    with pytest.raises(NotFoundError):
        await counter.increment(group["_id"], "a")
