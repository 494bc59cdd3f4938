from datetime import datetime

import pytest

from services.errors import ValidationError
from services.pagination import clamp_limit, decode_cursor, encode_cursor


def test_clamp_limit(settings):
    assert clamp_limit(None, settings) == 20
    assert clamp_limit(0, settings) == 1
    assert clamp_limit(-5, settings) == 1
    assert clamp_limit(1000, settings) == 100
    assert clamp_limit(35, settings) == 35


def test_malformed_cursor():
    with pytest.raises(ValidationError):
        decode_cursor("not-a-cursor")


async def test_list_raffles_pages(make_raffle, raffle_service, clock):
    created = []
    for i in range(5):
        created.append(await make_raffle(title=f"Raffle {i}"))
        clock.advance(minutes=1)

    seen = []
    cursor = None
    while True:
        page = await raffle_service.list_raffles(cursor=cursor, limit=2)
        seen.extend(r["_id"] for r in page["items"])
        if not page["has_more"]:
            break
        cursor = page["next_cursor"]

    assert seen == [r["_id"] for r in reversed(created)]


async def test_list_raffles_filters(make_raffle, raffle_service):
    await make_raffle(type="daily")
    await make_raffle(type="mega")
    page = await raffle_service.list_raffles(raffle_type="mega")
    assert [r["type"] for r in page["items"]] == ["mega"]
    assert page["next_cursor"] is None


def test_cursor_round_trip():
    cursor = encode_cursor(datetime(2025, 1, 1, 12, 0), "abc")
    assert decode_cursor(cursor) == (datetime(2025, 1, 1, 12, 0), "abc")


async def test_user_entries_span_raffles(make_raffle, enter, query_service, clock):
    first = await make_raffle(title="First")
    await enter(first, "0xaaa", 1)
    await enter(first, "0xbbb", 1)
    clock.advance(minutes=1)
    second = await make_raffle(title="Second")
    await enter(second, "0xaaa", 2)

    page = await query_service.user_entries("0xAAA", limit=1)
    assert [(e["raffle_title"], e["ticket_count"]) for e in page["items"]] == [("Second", 2)]
    assert page["has_more"]

    rest = await query_service.user_entries("0xaaa", cursor=page["next_cursor"], limit=1)
    assert [e["raffle_title"] for e in rest["items"]] == ["First"]
    assert not rest["has_more"]
