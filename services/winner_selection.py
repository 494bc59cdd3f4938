"""
Deterministic ticket-weighted winner selection.

Given the confirmed entries of a raffle and the random value the draw
resolved with, the same winners come out every time. Anyone holding the entry
list and the random value can recompute the result with ``verify_selection``.
"""
from __future__ import annotations

import hashlib
import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class TicketRange:
    participant: str
    tickets: int
    start_ticket: int
    end_ticket: int  # exclusive


@dataclass(frozen=True)
class Selection:
    position: int
    participant: str
    ticket_number: int  # index into the remaining pool at this draw
    total_tickets: int  # size of the remaining pool at this draw
    seed_hash: str


@dataclass(frozen=True)
class PrizeAllocation:
    position: int
    tier: int
    prize: int


def _entry_sort_key(entry: dict):
    return (entry["created_at"], str(entry["_id"]))


def aggregate_tickets(entries: Iterable[dict]) -> List[Tuple[str, int]]:
    """Per-participant ticket totals, ordered by each participant's first entry"""
    totals: Dict[str, int] = {}
    for entry in sorted(entries, key=_entry_sort_key):
        count = int(entry.get("ticket_count", 0))
        if count <= 0:
            continue
        totals[entry["participant"]] = totals.get(entry["participant"], 0) + count
    return list(totals.items())


def build_ranges(holdings: Sequence[Tuple[str, int]]) -> Tuple[List[TicketRange], int]:
    ranges: List[TicketRange] = []
    cursor = 0
    for participant, tickets in holdings:
        if tickets <= 0:
            continue
        ranges.append(TicketRange(participant, tickets, cursor, cursor + tickets))
        cursor += tickets
    return ranges, cursor


def compute_ticket(random_value: str, draw_index: int, total_tickets: int) -> Tuple[int, str]:
    seed_hash_hex = hashlib.sha256(f"{random_value}:{draw_index}".encode("utf-8")).hexdigest()
    return int(seed_hash_hex, 16) % total_tickets, seed_hash_hex


def find_holder(ranges: List[TicketRange], ticket: int) -> TicketRange:
    ends = [r.end_ticket for r in ranges]
    idx = bisect_right(ends, ticket)
    if idx >= len(ranges):
        raise RuntimeError(f"Ticket {ticket} out of range")
    return ranges[idx]


def select_winners(
    entries: Iterable[dict],
    random_value: str,
    winner_count: int,
    allow_repeat_wins: bool = False,
) -> List[Selection]:
    """
    Draw up to ``winner_count`` winners without replacement.

    Without repeat wins a selected participant leaves the pool with all their
    tickets; with repeat wins only the selected ticket is removed. Stops early
    when the pool runs dry.
    """
    holdings = aggregate_tickets(entries)
    selections: List[Selection] = []

    for draw_index in range(winner_count):
        ranges, total = build_ranges(holdings)
        if total == 0:
            break

        ticket, seed_hash = compute_ticket(random_value, draw_index, total)
        holder = find_holder(ranges, ticket)
        selections.append(Selection(
            position=draw_index + 1,
            participant=holder.participant,
            ticket_number=ticket,
            total_tickets=total,
            seed_hash=seed_hash,
        ))

        if allow_repeat_wins:
            holdings = [
                (participant, tickets - 1 if participant == holder.participant else tickets)
                for participant, tickets in holdings
            ]
        else:
            holdings = [(p, t) for p, t in holdings if p != holder.participant]

    return selections


def verify_selection(
    entries: Iterable[dict],
    random_value: str,
    winner_count: int,
    recorded: Sequence[dict],
    allow_repeat_wins: bool = False,
) -> bool:
    """Recompute the draw and compare it with recorded winner documents"""
    expected = select_winners(entries, random_value, winner_count, allow_repeat_wins)
    if len(expected) != len(recorded):
        return False

    recorded_sorted = sorted(recorded, key=lambda w: w["position"])
    for selection, winner in zip(expected, recorded_sorted):
        if (selection.position, selection.participant, selection.ticket_number) != (
            winner["position"], winner["participant"], winner["ticket_number"]
        ):
            return False
    return True


def default_tiers(winner_count: int) -> List[dict]:
    return [{"tier": 1, "percentage": 100.0, "winner_count": winner_count}]


def protocol_fee(total_pool: int, fee_percent: float) -> int:
    return math.floor(total_pool * fee_percent / 100)


def distribute_prizes(
    total_pool: int,
    fee_percent: float,
    winners_drawn: int,
    prize_tiers: Optional[List[dict]] = None,
    winner_count: Optional[int] = None,
) -> List[PrizeAllocation]:
    """
    Split the pool after fee across the drawn positions.

    Positions fill tiers in order. A tier with fewer drawn winners than
    configured splits its allocation among the winners it has; a tier with
    none pays nothing.
    """
    tiers = prize_tiers or default_tiers(winner_count or winners_drawn)
    distributable = total_pool - protocol_fee(total_pool, fee_percent)

    allocations: List[PrizeAllocation] = []
    position = 1
    for tier in sorted(tiers, key=lambda t: t["tier"]):
        slots = min(int(tier["winner_count"]), winners_drawn - (position - 1))
        if slots <= 0:
            break
        tier_amount = math.floor(distributable * float(tier["percentage"]) / 100)
        share = tier_amount // slots
        for _ in range(slots):
            allocations.append(PrizeAllocation(position=position, tier=int(tier["tier"]), prize=share))
            position += 1

    return allocations
