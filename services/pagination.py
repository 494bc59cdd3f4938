import base64
import binascii
import json
from datetime import datetime
from typing import Optional

from config import Settings
from services.errors import ValidationError


def clamp_limit(limit: Optional[int], settings: Settings) -> int:
    if limit is None:
        return settings.default_page_limit
    return max(1, min(int(limit), settings.max_page_limit))


def encode_cursor(sort_value: datetime, doc_id: str) -> str:
    raw = json.dumps({"v": sort_value.isoformat(), "id": str(doc_id)})
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str):
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
        return datetime.fromisoformat(data["v"]), data["id"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise ValidationError("cursor", "malformed pagination cursor")


async def paginate(collection, query: dict, settings: Settings, cursor: str = None,
                   limit: int = None, sort_field: str = "created_at") -> dict:
    """Newest-first keyset pagination over ``(sort_field, _id)``"""
    limit = clamp_limit(limit, settings)
    filters = dict(query)

    if cursor:
        sort_value, last_id = decode_cursor(cursor)
        filters["$or"] = [
            {sort_field: {"$lt": sort_value}},
            {sort_field: sort_value, "_id": {"$lt": last_id}},
        ]

    docs = await collection.find(filters).sort(
        [(sort_field, -1), ("_id", -1)]
    ).limit(limit + 1).to_list(limit + 1)

    has_more = len(docs) > limit
    items = docs[:limit]
    next_cursor = None
    if has_more and items:
        last = items[-1]
        next_cursor = encode_cursor(last[sort_field], last["_id"])

    return {"items": items, "next_cursor": next_cursor, "has_more": has_more}
