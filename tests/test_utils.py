import asyncio
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from pairchat.core.errors import NotFoundError
from pairchat.utils.locks import KeyedLock
from pairchat.utils.mongo import decode_cursor, encode_cursor, older_than, to_object_id


def test_cursor_encodes_millis_and_id():
    oid = ObjectId()
    ts = datetime(2024, 5, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)

    cursor = encode_cursor(ts, oid)

    assert cursor == f"{int(ts.timestamp() * 1000)}:{oid}"
    assert decode_cursor(cursor) == (ts, oid)


@pytest.mark.parametrize("cursor", [None, "", "garbage", "123:not-an-oid", "abc:65a000000000000000000000"])
def test_bad_cursor_means_first_page(cursor):
    assert decode_cursor(cursor) is None
    assert older_than("created_at", cursor) == {}


def test_to_object_id_rejects_malformed_ids():
    oid = ObjectId()
    assert to_object_id(str(oid)) == oid
    assert to_object_id(oid) is oid
    with pytest.raises(NotFoundError):
        to_object_id("nope", "Conversation")


@pytest.mark.asyncio
async def test_keyed_lock_serializes_per_key_and_cleans_up():
    locks = KeyedLock()
    trace = []

    async def worker(key, name):
        async with locks.hold(key):
            trace.append(f"{name}+")
            await asyncio.sleep(0)
            trace.append(f"{name}-")

    await asyncio.gather(worker("c1", "a"), worker("c1", "b"))

    assert trace == ["a+", "a-", "b+", "b-"]
    assert len(locks) == 0
