import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from pairchat.core.errors import InvalidGroupError, NotFoundError, ValidationError
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.services.conversation_resolver import ConversationResolver
from pairchat.utils.locks import KeyedLock


@pytest.fixture
def repos(db):
    return ConversationRepository(db), MessageRepository(db)


@pytest.fixture
def resolver(repos):
    conversation_repo, message_repo = repos
    return ConversationResolver(conversation_repo, message_repo, locks=KeyedLock())


async def _insert_duplicate(conversation_repo, message_repo, users, message_count, created_at):
    """Write a direct conversation straight to the store, bypassing the resolver."""
    convo = {
        "participants": list(users),
        "is_group": False,
        "message_refs": [],
        "unread_counts": {users[0]: 0, users[1]: message_count},
        "last_message_preview": None,
        "created_at": created_at,
        "updated_at": created_at,
    }
    result = await conversation_repo.collection.insert_one(convo)
    convo["_id"] = result.inserted_id
    for i in range(message_count):
        msg = await message_repo.save_message(convo["_id"], users[0], users[1], f"m{i}", f"{result.inserted_id}-{i}")
        convo["message_refs"].append(msg["_id"])
    await conversation_repo.collection.update_one(
        {"_id": convo["_id"]}, {"$set": {"message_refs": convo["message_refs"]}}
    )
    return convo


@pytest.mark.asyncio
async def test_resolve_direct_creates_once_and_is_symmetric(resolver, repos):
    first = await resolver.resolve_direct("u1", "u2")
    again = await resolver.resolve_direct("u1", "u2")
    swapped = await resolver.resolve_direct("u2", "u1")

    assert first["_id"] == again["_id"] == swapped["_id"]
    assert first["message_refs"] == []
    assert first["unread_counts"] == {"u1": 0, "u2": 0}
    assert await repos[0].collection.count_documents({}) == 1


@pytest.mark.asyncio
async def test_concurrent_resolution_leaves_one_record(resolver, repos):
    await asyncio.gather(*(resolver.resolve_direct("a", "b") for _ in range(10)))

    # whatever raced, the next read converges on a single record
    canonical = await resolver.resolve_direct("b", "a")
    assert await repos[0].collection.count_documents({"is_group": False}) == 1
    assert canonical["participants"] == ["a", "b"]


@pytest.mark.asyncio
async def test_resolve_direct_rejects_self_conversation(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve_direct("u1", "u1")


@pytest.mark.asyncio
async def test_merge_keeps_the_union_of_messages(resolver, repos):
    conversation_repo, message_repo = repos
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    records = []
    for offset, count in enumerate([2, 5, 1]):
        records.append(await _insert_duplicate(
            conversation_repo, message_repo, ("u1", "u2"), count, base + timedelta(minutes=offset)
        ))
    all_ids = {ref for r in records for ref in r["message_refs"]}

    merged = await resolver.resolve_direct("u1", "u2")

    assert merged["_id"] == records[1]["_id"]
    assert len(merged["message_refs"]) == 8
    assert set(merged["message_refs"]) == all_ids
    assert merged["unread_counts"]["u2"] == 8
    assert await conversation_repo.collection.count_documents({}) == 1
    for gone in (records[0], records[2]):
        assert await conversation_repo.get(gone["_id"]) is None

    stored = await conversation_repo.get(merged["_id"])
    assert len(stored["message_refs"]) == 8
    messages = await message_repo.get_many(stored["message_refs"])
    assert [m["_id"] for m in messages] == stored["message_refs"]


@pytest.mark.asyncio
async def test_merge_tie_goes_to_the_oldest_record(resolver, repos):
    conversation_repo, message_repo = repos
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    newer = await _insert_duplicate(conversation_repo, message_repo, ("u1", "u2"), 3, base + timedelta(hours=1))
    older = await _insert_duplicate(conversation_repo, message_repo, ("u1", "u2"), 3, base)

    merged = await resolver.resolve_direct("u2", "u1")

    assert merged["_id"] == older["_id"]
    assert await conversation_repo.get(newer["_id"]) is None
    assert len(merged["message_refs"]) == 6


@pytest.mark.asyncio
async def test_merge_deduplicates_shared_references(resolver, repos):
    conversation_repo, message_repo = repos
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    main = await _insert_duplicate(conversation_repo, message_repo, ("u1", "u2"), 2, base)
    dup = await _insert_duplicate(conversation_repo, message_repo, ("u1", "u2"), 1, base + timedelta(minutes=1))
    # the duplicate also points at one of main's messages
    await conversation_repo.collection.update_one(
        {"_id": dup["_id"]}, {"$push": {"message_refs": main["message_refs"][0]}}
    )

    merged = await resolver.resolve_direct("u1", "u2")

    assert len(merged["message_refs"]) == 3
    assert len(set(merged["message_refs"])) == 3


@pytest.mark.asyncio
async def test_create_group_adds_creator_as_admin(resolver):
    convo = await resolver.create_group("owner", ["m1", "m2", "m2", "owner"], "  Team  ")

    assert convo["is_group"] is True
    assert convo["group_admin"] == "owner"
    assert convo["group_name"] == "Team"
    assert convo["participants"] == ["owner", "m1", "m2"]


@pytest.mark.asyncio
@pytest.mark.parametrize("members", [[], ["m1"], ["m1", "owner"], ["m1", "m1"]])
async def test_create_group_needs_two_other_members(resolver, members):
    with pytest.raises(InvalidGroupError):
        await resolver.create_group("owner", members, "Team")


@pytest.mark.asyncio
async def test_load_unknown_or_malformed_id(resolver):
    with pytest.raises(NotFoundError):
        await resolver.load("not-an-object-id")
    with pytest.raises(NotFoundError):
        await resolver.load("65a000000000000000000000")


@pytest.mark.asyncio
async def test_losing_the_create_race_returns_the_winner(resolver, repos, monkeypatch):
    conversation_repo = repos[0]
    real_create = ConversationRepository.create_direct
    winners = []

    async def create_after_concurrent_winner(self, user_a, user_b):
        # another request inserts first; the unique index rejects this insert
        winners.append(await real_create(self, user_a, user_b))
        raise DuplicateKeyError("E11000 duplicate key error collection: conversations index: direct_key_1")

    monkeypatch.setattr(ConversationRepository, "create_direct", create_after_concurrent_winner)
    convo = await resolver.resolve_direct("u1", "u2")

    assert convo["_id"] == winners[0]["_id"]
    assert await conversation_repo.collection.count_documents({}) == 1


@pytest.mark.asyncio
async def test_duplicate_key_without_a_winner_is_raised(resolver, monkeypatch):
    async def always_rejected(self, user_a, user_b):
        raise DuplicateKeyError("E11000 duplicate key error")

    monkeypatch.setattr(ConversationRepository, "create_direct", always_rejected)
    with pytest.raises(DuplicateKeyError):
        await resolver.resolve_direct("u1", "u2")


@pytest.mark.asyncio
async def test_direct_key_index_skips_records_without_a_key(monkeypatch):
    class RecordingCollection:
        def __init__(self):
            self.indexes = []

        async def create_index(self, keys, **options):
            self.indexes.append((keys, options))

    recorder = RecordingCollection()
    monkeypatch.setattr(ConversationRepository, "collection", property(lambda self: recorder))

    await ConversationRepository(db=None).ensure_indexes()

    (options,) = [opts for keys, opts in recorder.indexes if keys == [("direct_key", 1)]]
    assert options["unique"] is True
    assert options["partialFilterExpression"] == {"is_group": False, "direct_key": {"$exists": True}}


@pytest.mark.asyncio
@pytest.mark.parametrize("peer", ["a.b", "$where", ""])
async def test_user_ids_must_be_usable_as_field_names(resolver, peer):
    with pytest.raises(ValidationError):
        await resolver.resolve_direct("u1", peer)
    with pytest.raises(ValidationError):
        await resolver.create_group("owner", ["m1", peer or "m.2"], "Team")
