"""
Read-side aggregation over raffles, entries and payouts.

Aggregates that depend on a pipeline that has not run yet (payout figures
before any draw completed) are reported as ``None`` rather than zero.
"""
import logging
from typing import List

from models.entry import EntryStatus
from models.raffle import RaffleStatus
from models.winner import PayoutStatus
from services.base import BaseService, normalize_address
from services.errors import NotFoundError
from services.pagination import clamp_limit, paginate
from services.winner_selection import protocol_fee

logger = logging.getLogger(__name__)

# Entry statuses whose tickets may have been added to the raffle counters;
# entries rejected after payment carry ``rejected: True`` and never were
COUNTED = [
    EntryStatus.CONFIRMED.value,
    EntryStatus.REFUND_PENDING.value,
    EntryStatus.REFUND_PROCESSING.value,
    EntryStatus.REFUNDED.value,
    EntryStatus.REFUND_FAILED.value,
]


def counted(query: dict) -> dict:
    """Restrict an entry query to entries whose tickets were counted"""
    return {**query, "status": {"$in": COUNTED}, "rejected": {"$ne": True}}


class QueryService(BaseService):

    async def _raffle(self, raffle_id: str) -> dict:
        raffle = await self.db.raffles.find_one({"_id": raffle_id})
        if not raffle:
            raise NotFoundError("Raffle", raffle_id)
        return raffle

    async def get_participants(self, raffle_id: str, limit: int = None) -> List[dict]:
        await self._raffle(raffle_id)
        entries = await self.db.entries.find(
            counted({"raffle_id": raffle_id})
        ).sort([("created_at", 1), ("_id", 1)]).to_list(None)

        participants = {}
        for entry in entries:
            p = participants.setdefault(entry["participant"], {
                "participant": entry["participant"],
                "ticket_count": 0,
                "total_paid": 0,
                "entries": 0,
                "first_entry_at": entry["created_at"],
            })
            p["ticket_count"] += entry["ticket_count"]
            p["total_paid"] += entry["total_paid"]
            p["entries"] += 1

        ranked = sorted(participants.values(), key=lambda p: (-p["ticket_count"], p["first_entry_at"]))
        return ranked[:clamp_limit(limit, self.settings)]

    async def list_entries(self, raffle_id: str = None, participant: str = None,
                           cursor: str = None, limit: int = None) -> dict:
        query = {}
        if raffle_id:
            query["raffle_id"] = raffle_id
        if participant:
            query["participant"] = normalize_address(participant)
        return await paginate(self.db.entries, query, self.settings, cursor, limit)

    async def raffle_stats(self, raffle_id: str) -> dict:
        raffle = await self._raffle(raffle_id)
        fee = protocol_fee(raffle["total_pool"], raffle["protocol_fee_percent"])

        payout_stats = None
        if raffle["status"] == RaffleStatus.COMPLETED.value:
            winners = await self.db.winners.find({"raffle_id": raffle_id}).to_list(None)
            payout_stats = {s.value: 0 for s in PayoutStatus}
            for winner in winners:
                payout_stats[winner["status"]] += 1

        return {
            "raffle_id": raffle_id,
            "status": raffle["status"],
            "total_entries": raffle["total_entries"],
            "total_participants": raffle["total_participants"],
            "total_pool": raffle["total_pool"],
            "protocol_fee": fee,
            "distributable_pool": raffle["total_pool"] - fee,
            "tickets_by_participant": dict(raffle.get("participant_tickets", {})),
            "payout_stats": payout_stats,
        }

    async def reconcile_totals(self, raffle_id: str) -> dict:
        """Recompute raffle counters from the entries and report drift"""
        raffle = await self._raffle(raffle_id)
        entries = await self.db.entries.find(counted({"raffle_id": raffle_id})).to_list(None)

        computed = {
            "total_entries": sum(e["ticket_count"] for e in entries),
            "total_pool": sum(e["total_paid"] for e in entries),
            "total_participants": len({e["participant"] for e in entries}),
        }
        stored = {key: raffle.get(key, 0) for key in computed}
        consistent = computed == stored
        if not consistent:
            logger.warning(f"Raffle {raffle_id} counters drifted: stored {stored}, computed {computed}")

        stale_before = self.transfer_stale_before()
        in_flight = await self.db.entries.find(
            {"raffle_id": raffle_id, "status": EntryStatus.REFUND_PROCESSING.value}
        ).to_list(None)
        stuck = [
            {"id": e["_id"], "participant": e["participant"], "amount": e["total_paid"],
             "processing_at": e.get("refund_processing_at"), "failure_reason": e.get("failure_reason")}
            for e in in_flight
            if (e.get("refund_processing_at") or e["updated_at"]) <= stale_before
        ]
        rejected = await self.db.entries.count_documents({"raffle_id": raffle_id, "rejected": True})
        return {
            "raffle_id": raffle_id,
            "consistent": consistent,
            "stored": stored,
            "computed": computed,
            "rejected_entries": rejected,
            "refunds_processing": len(in_flight),
            "stuck_refunds": stuck,
        }

    async def user_entries(self, participant: str, cursor: str = None, limit: int = None) -> dict:
        """Entry history across raffles, with each raffle's title and type"""
        page = await self.list_entries(participant=participant, cursor=cursor, limit=limit)
        raffle_ids = list({e["raffle_id"] for e in page["items"]})
        raffles = await self.db.raffles.find({"_id": {"$in": raffle_ids}}).to_list(None)
        by_id = {r["_id"]: r for r in raffles}

        for entry in page["items"]:
            raffle = by_id.get(entry["raffle_id"])
            entry["raffle_title"] = raffle["title"] if raffle else None
            entry["raffle_type"] = raffle["type"] if raffle else None
        return page

    async def user_wins(self, participant: str, cursor: str = None, limit: int = None) -> dict:
        return await paginate(self.db.winners, {"participant": normalize_address(participant)},
                              self.settings, cursor, limit)

    async def dashboard_stats(self) -> dict:
        raffles = await self.db.raffles.find({}).to_list(None)
        by_status = {}
        for raffle in raffles:
            by_status[raffle["status"]] = by_status.get(raffle["status"], 0) + 1

        entries = await self.db.entries.find(counted({})).to_list(None)
        participants = {e["participant"] for e in entries}
        stats = {
            "active_raffles": by_status.get(RaffleStatus.ACTIVE.value, 0) + by_status.get(RaffleStatus.ENDING.value, 0),
            "completed_raffles": by_status.get(RaffleStatus.COMPLETED.value, 0),
            "cancelled_raffles": by_status.get(RaffleStatus.CANCELLED.value, 0),
            "total_pool": sum(r.get("total_pool", 0) for r in raffles),
            "total_entries": sum(r.get("total_entries", 0) for r in raffles),
            "unique_participants": len(participants),
            "total_prizes_awarded": None,
            "pending_payouts": None,
            "failed_payouts": None,
        }

        if stats["completed_raffles"]:
            winners = await self.db.winners.find({}).to_list(None)
            stats["total_prizes_awarded"] = sum(w["prize"] for w in winners if w["status"] == PayoutStatus.PAID.value)
            stats["pending_payouts"] = sum(1 for w in winners if w["status"] == PayoutStatus.PENDING.value)
            stats["failed_payouts"] = sum(1 for w in winners if w["status"] == PayoutStatus.FAILED.value)
        return stats
