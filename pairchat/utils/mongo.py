from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from pairchat.core.errors import NotFoundError


def to_object_id(value: Any, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} {value} not found")


def is_field_safe(value: Any) -> bool:
    """True when ``value`` can be used as one segment of a Mongo field path.

    User ids key ``unread_counts``, so a dot or a leading ``$`` would
    address the wrong field.
    """
    return isinstance(value, str) and bool(value) and "." not in value and not value.startswith("$")


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def encode_cursor(ts: datetime, oid: Any) -> str:
    # Cursor format: timestamp_ms:object_id_hex
    return f"{int(as_utc(ts).timestamp() * 1000)}:{oid}"


def decode_cursor(cursor: Optional[str]) -> Optional[Tuple[datetime, ObjectId]]:
    if not cursor:
        return None
    try:
        ts_str, oid_hex = cursor.split(":", 1)
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
        return ts, ObjectId(oid_hex)
    except (ValueError, InvalidId):
        return None


def older_than(field: str, cursor: Optional[str]) -> Dict[str, Any]:
    decoded = decode_cursor(cursor)
    if decoded is None:
        return {}
    ts, oid = decoded
    return {
        "$or": [
            {field: {"$lt": ts}},
            {field: ts, "_id": {"$lt": oid}},
        ]
    }
