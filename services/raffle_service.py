import logging
from datetime import timedelta
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models.entry import EntryStatus
from models.raffle import DrawPhase, RaffleStatus, RaffleType
from models.winner import PayoutStatus
from services.base import BaseService, as_naive_utc, new_id, normalize_address
from services.errors import (
    ClosedError,
    ConcurrencyError,
    CooldownError,
    DrawFailedError,
    DuplicateTxError,
    ExternalServiceError,
    InsufficientParticipantsError,
    LimitExceededError,
    NotFoundError,
    NotReadyError,
    PaymentVerificationError,
    ServiceError,
    StateError,
    TransientExternalError,
    ValidationError,
)
from services.ledger_service import LedgerAdapter, PaymentStatus
from services.pagination import paginate
from services.randomness_service import RandomnessAdapter
from services.winner_selection import default_tiers, distribute_prizes, select_winners

logger = logging.getLogger(__name__)

ACCEPTING = [RaffleStatus.ACTIVE.value, RaffleStatus.ENDING.value]
CANCELLABLE = [RaffleStatus.SCHEDULED.value, RaffleStatus.ACTIVE.value, RaffleStatus.ENDING.value]


def validate_participant(participant: str) -> str:
    address = normalize_address(participant)
    if not address:
        raise ValidationError("participant", "address is required")
    if "." in address or address.startswith("$"):
        raise ValidationError("participant", "address contains invalid characters")
    return address


class RaffleService(BaseService):
    def __init__(self, db, settings, ledger: LedgerAdapter, randomness: RandomnessAdapter, clock=None):
        super().__init__(db, settings, clock)
        self.ledger = ledger
        self.randomness = randomness

    # Creation and lookup

    def _validate_config(self, config: dict, now) -> dict:
        s = self.settings

        raffle_type = config.get("type")
        raffle_type = getattr(raffle_type, "value", raffle_type)
        if raffle_type not in [t.value for t in RaffleType]:
            raise ValidationError("type", f"must be one of {', '.join(t.value for t in RaffleType)}")

        title = (config.get("title") or "").strip()
        if not title:
            raise ValidationError("title", "must not be empty")
        if len(title) > 200:
            raise ValidationError("title", "must be at most 200 characters")

        entry_price = config.get("entry_price")
        if not isinstance(entry_price, int) or isinstance(entry_price, bool) or entry_price <= 0:
            raise ValidationError("entry_price", "must be a positive integer amount")
        if not s.min_entry_price <= entry_price <= s.max_entry_price:
            raise ValidationError("entry_price", f"must be between {s.min_entry_price} and {s.max_entry_price}")

        start_time = as_naive_utc(config.get("start_time"))
        end_time = as_naive_utc(config.get("end_time"))
        if start_time is None or end_time is None:
            raise ValidationError("start_time", "start and end times are required")
        if start_time >= end_time:
            raise ValidationError("end_time", "must be after start_time")
        duration = end_time - start_time
        if duration < timedelta(hours=s.min_raffle_hours):
            raise ValidationError("end_time", f"raffle must last at least {s.min_raffle_hours} hour(s)")
        if duration > timedelta(days=s.max_raffle_days):
            raise ValidationError("end_time", f"raffle must not last more than {s.max_raffle_days} days")
        if end_time <= now:
            raise ValidationError("end_time", "must be in the future")

        winner_count = config.get("winner_count", 1)
        if not 1 <= winner_count <= s.max_winner_count:
            raise ValidationError("winner_count", f"must be between 1 and {s.max_winner_count}")

        max_entries = config.get("max_entries_per_user")
        if not isinstance(max_entries, int) or max_entries < 1:
            raise ValidationError("max_entries_per_user", "must be at least 1")

        min_participants = config.get("min_participants") or 1
        if min_participants < 1:
            raise ValidationError("min_participants", "must be at least 1")

        fee = config.get("protocol_fee_percent")
        if fee is None:
            fee = s.protocol_fee_percent
        if not 0 <= fee <= s.max_protocol_fee_percent:
            raise ValidationError("protocol_fee_percent", f"must be between 0 and {s.max_protocol_fee_percent}")

        tiers = config.get("prize_tiers")
        if tiers:
            tiers = [t.model_dump() if hasattr(t, "model_dump") else dict(t) for t in tiers]
            if len({t["tier"] for t in tiers}) != len(tiers):
                raise ValidationError("prize_tiers", "tier numbers must be unique")
            if abs(sum(float(t["percentage"]) for t in tiers) - 100) > 1e-9:
                raise ValidationError("prize_tiers", "percentages must sum to 100")
            if sum(int(t["winner_count"]) for t in tiers) != winner_count:
                raise ValidationError("prize_tiers", "tier winner counts must sum to winner_count")
        else:
            tiers = default_tiers(winner_count)

        allow_repeat = config.get("allow_repeat_wins")
        if allow_repeat is None:
            allow_repeat = s.allow_repeat_wins

        draw_time = as_naive_utc(config.get("draw_time")) or end_time
        if draw_time < end_time:
            raise ValidationError("draw_time", "must not be before end_time")

        return {
            "type": raffle_type,
            "title": title,
            "description": (config.get("description") or "").strip(),
            "entry_price": entry_price,
            "max_entries_per_user": max_entries,
            "winner_count": winner_count,
            "min_participants": min_participants,
            "allow_repeat_wins": bool(allow_repeat),
            "prize_tiers": tiers,
            "protocol_fee_percent": float(fee),
            "start_time": start_time,
            "end_time": end_time,
            "draw_time": draw_time,
        }

    async def create_raffle(self, config: dict) -> dict:
        now = self.now()
        fields = self._validate_config(config, now)
        status = RaffleStatus.ACTIVE if fields["start_time"] <= now else RaffleStatus.SCHEDULED

        raffle = {
            "_id": new_id(),
            **fields,
            "status": status.value,
            "paused": False,
            "total_entries": 0,
            "total_participants": 0,
            "total_pool": 0,
            "participant_tickets": {},
            "draw": None,
            "settlement_ref": None,
            "cancel_reason": None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.raffles.insert_one(raffle)
        logger.info(f"Created {fields['type']} raffle {raffle['_id']} ({status.value})")
        return raffle

    async def get_raffle(self, raffle_id: str) -> dict:
        raffle = await self.db.raffles.find_one({"_id": raffle_id})
        if not raffle:
            raise NotFoundError("Raffle", raffle_id)
        return raffle

    async def list_raffles(self, status: str = None, raffle_type: str = None,
                           cursor: str = None, limit: int = None) -> dict:
        query = {}
        if status:
            query["status"] = status
        if raffle_type:
            query["type"] = raffle_type
        return await paginate(self.db.raffles, query, self.settings, cursor, limit)

    async def get_winners(self, raffle_id: str) -> List[dict]:
        return await self.db.winners.find({"raffle_id": raffle_id}).sort("position", 1).to_list(None)

    # Status transitions

    def _is_accepting(self, raffle: dict, now) -> bool:
        return (
            raffle["status"] in ACCEPTING
            and not raffle.get("paused", False)
            and now < raffle["end_time"]
        )

    async def refresh_status(self, raffle: dict) -> dict:
        """Apply time-driven transitions (scheduled -> active, active -> ending)"""
        now = self.now()
        changed = False

        if raffle["status"] == RaffleStatus.SCHEDULED.value and raffle["start_time"] <= now:
            result = await self.db.raffles.update_one(
                {"_id": raffle["_id"], "status": RaffleStatus.SCHEDULED.value},
                {"$set": {"status": RaffleStatus.ACTIVE.value, "updated_at": now}}
            )
            changed = changed or result.modified_count > 0
            raffle = {**raffle, "status": RaffleStatus.ACTIVE.value}

        threshold = timedelta(minutes=self.settings.ending_threshold_minutes)
        if raffle["status"] == RaffleStatus.ACTIVE.value and raffle["end_time"] - now < threshold:
            result = await self.db.raffles.update_one(
                {"_id": raffle["_id"], "status": RaffleStatus.ACTIVE.value},
                {"$set": {"status": RaffleStatus.ENDING.value, "updated_at": now}}
            )
            changed = changed or result.modified_count > 0

        if changed:
            logger.info(f"Raffle {raffle['_id']} status refreshed")
            return await self.get_raffle(raffle["_id"])
        return raffle

    async def activate_raffle(self, raffle_id: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        if raffle["status"] != RaffleStatus.SCHEDULED.value:
            raise StateError(f"Raffle {raffle_id} is {raffle['status']}, only scheduled raffles can be activated")

        now = self.now()
        if raffle["start_time"] > now:
            raise NotReadyError(f"Raffle {raffle_id} starts at {raffle['start_time'].isoformat()}")

        updated = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, "status": RaffleStatus.SCHEDULED.value},
            {"$set": {"status": RaffleStatus.ACTIVE.value, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise StateError(f"Raffle {raffle_id} changed state concurrently")
        logger.info(f"Raffle {raffle_id} activated")
        return updated

    async def activate_due_raffles(self) -> int:
        now = self.now()
        result = await self.db.raffles.update_many(
            {"status": RaffleStatus.SCHEDULED.value, "start_time": {"$lte": now}},
            {"$set": {"status": RaffleStatus.ACTIVE.value, "updated_at": now}}
        )
        if result.modified_count:
            logger.info(f"Activated {result.modified_count} scheduled raffles")
        return result.modified_count

    async def mark_ending_raffles(self) -> int:
        now = self.now()
        threshold = now + timedelta(minutes=self.settings.ending_threshold_minutes)
        result = await self.db.raffles.update_many(
            {"status": RaffleStatus.ACTIVE.value, "end_time": {"$lt": threshold}},
            {"$set": {"status": RaffleStatus.ENDING.value, "updated_at": now}}
        )
        return result.modified_count

    async def _set_paused(self, raffle_id: str, paused: bool) -> dict:
        now = self.now()
        updated = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, "status": {"$in": ACCEPTING}, "paused": {"$ne": paused}},
            {"$set": {"paused": paused, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if updated:
            logger.info(f"Raffle {raffle_id} {'paused' if paused else 'resumed'}")
            return updated

        raffle = await self.get_raffle(raffle_id)
        if raffle["status"] not in ACCEPTING:
            raise StateError(f"Raffle {raffle_id} is {raffle['status']}, only active raffles can be paused or resumed")
        raise StateError(f"Raffle {raffle_id} is already {'paused' if paused else 'running'}")

    async def pause_raffle(self, raffle_id: str) -> dict:
        return await self._set_paused(raffle_id, True)

    async def resume_raffle(self, raffle_id: str) -> dict:
        return await self._set_paused(raffle_id, False)

    # Entries

    def _check_ticket_count(self, ticket_count: int):
        if not isinstance(ticket_count, int) or ticket_count < 1:
            raise ValidationError("ticket_count", "must be a positive integer")
        if ticket_count > self.settings.max_tickets_per_entry:
            raise ValidationError("ticket_count", f"must not exceed {self.settings.max_tickets_per_entry}")

    async def validate_entry(self, raffle_id: str, participant: str, ticket_count: int) -> dict:
        """Eligibility preview; never writes"""
        participant = validate_participant(participant)
        raffle = await self.get_raffle(raffle_id)
        now = self.now()

        current = raffle.get("participant_tickets", {}).get(participant, 0)
        remaining = max(0, raffle["max_entries_per_user"] - current)
        result = {"valid": False, "reason": None, "current_tickets": current, "remaining": remaining}

        status = raffle["status"]
        if status == RaffleStatus.SCHEDULED.value and raffle["start_time"] <= now:
            status = RaffleStatus.ACTIVE.value

        if status not in ACCEPTING:
            result["reason"] = f"Raffle is {status}"
        elif raffle.get("paused"):
            result["reason"] = "Raffle is paused"
        elif now >= raffle["end_time"]:
            result["reason"] = "Raffle has ended"
        elif ticket_count < 1 or ticket_count > self.settings.max_tickets_per_entry:
            result["reason"] = f"Ticket count must be between 1 and {self.settings.max_tickets_per_entry}"
        elif ticket_count > remaining:
            result["reason"] = f"Only {remaining} more tickets allowed"
        else:
            result["valid"] = True
        return result

    def _amount_within_tolerance(self, received: float, expected: int) -> bool:
        return abs(received - expected) * 10_000 <= expected * self.settings.payment_tolerance_bps

    async def submit_entry(self, raffle_id: str, participant: str, ticket_count: int, tx_ref: str) -> dict:
        participant = validate_participant(participant)
        self._check_ticket_count(ticket_count)
        tx_ref = (tx_ref or "").strip()
        if not tx_ref:
            raise ValidationError("tx_ref", "transaction reference is required")

        raffle = await self.refresh_status(await self.get_raffle(raffle_id))
        if not self._is_accepting(raffle, self.now()):
            raise ClosedError(f"Raffle {raffle_id} is not accepting entries")

        if await self.db.ledger_refs.find_one({"_id": tx_ref}):
            raise DuplicateTxError(tx_ref)

        current = raffle.get("participant_tickets", {}).get(participant, 0)
        if current + ticket_count > raffle["max_entries_per_user"]:
            raise LimitExceededError(current, ticket_count, raffle["max_entries_per_user"])

        expected = ticket_count * raffle["entry_price"]
        verification = await self.call_external(
            lambda: self.ledger.verify_payment(tx_ref, expected, self.settings.treasury_address),
            f"payment verification for {tx_ref}"
        )
        if verification.status == PaymentStatus.NOT_FOUND:
            raise PaymentVerificationError("tx_ref", "transaction not found or not confirmed")
        received = verification.amount if verification.amount is not None else expected
        if verification.status == PaymentStatus.AMOUNT_MISMATCH or not self._amount_within_tolerance(received, expected):
            raise PaymentVerificationError("tx_ref", f"amount {received} does not match expected {expected}")

        now = self.now()
        entry_id = new_id()
        try:
            await self.db.ledger_refs.insert_one({
                "_id": tx_ref,
                "kind": "entry",
                "record_id": entry_id,
                "claimed_at": now,
            })
        except DuplicateKeyError:
            raise DuplicateTxError(tx_ref)

        entry = {
            "_id": entry_id,
            "raffle_id": raffle_id,
            "participant": participant,
            "ticket_count": ticket_count,
            "total_paid": expected,
            "amount_received": received,
            "tx_ref": tx_ref,
            "status": EntryStatus.PENDING.value,
            "rejected": False,
            "refund_tx_ref": None,
            "failure_reason": None,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.entries.insert_one(entry)

        try:
            await self._apply_entry_counters(raffle_id, participant, ticket_count, expected)
        except (ClosedError, LimitExceededError, ConcurrencyError) as e:
            # Payment was taken but never counted: queue it for refund
            await self.db.entries.update_one(
                {"_id": entry_id},
                {"$set": {"status": EntryStatus.REFUND_PENDING.value, "rejected": True,
                          "failure_reason": e.message, "updated_at": self.now()}}
            )
            logger.warning(f"Entry {entry_id} for raffle {raffle_id} rejected, queued for refund: {e.message}")
            raise

        confirmed = await self.db.entries.find_one_and_update(
            {"_id": entry_id, "status": EntryStatus.PENDING.value},
            {"$set": {"status": EntryStatus.CONFIRMED.value, "updated_at": self.now()}},
            return_document=ReturnDocument.AFTER
        )

        # A cancel that swept entries before this confirm missed it
        current = await self.get_raffle(raffle_id)
        if current["status"] == RaffleStatus.CANCELLED.value:
            requeued = await self.db.entries.find_one_and_update(
                {"_id": entry_id, "status": EntryStatus.CONFIRMED.value},
                {"$set": {"status": EntryStatus.REFUND_PENDING.value, "updated_at": self.now()}},
                return_document=ReturnDocument.AFTER
            )
            logger.warning(f"Raffle {raffle_id} was cancelled while entry {entry_id} was recorded; queued for refund")
            return requeued or await self.db.entries.find_one({"_id": entry_id})

        logger.info(f"Entry {entry_id}: {participant} bought {ticket_count} tickets in raffle {raffle_id}")
        return confirmed

    async def _apply_entry_counters(self, raffle_id: str, participant: str, ticket_count: int, amount: int) -> dict:
        """Versioned compare-and-swap of the raffle totals"""
        for attempt in range(self.settings.max_cas_retries):
            raffle = await self.get_raffle(raffle_id)
            now = self.now()
            if not self._is_accepting(raffle, now):
                raise ClosedError(f"Raffle {raffle_id} closed before the entry was recorded")

            tickets = raffle.get("participant_tickets", {})
            current = tickets.get(participant, 0)
            if current + ticket_count > raffle["max_entries_per_user"]:
                raise LimitExceededError(current, ticket_count, raffle["max_entries_per_user"])

            increments = {
                "total_entries": ticket_count,
                "total_pool": amount,
                f"participant_tickets.{participant}": ticket_count,
                "version": 1,
            }
            if participant not in tickets:
                increments["total_participants"] = 1

            updated = await self.db.raffles.find_one_and_update(
                {
                    "_id": raffle_id,
                    "version": raffle["version"],
                    "status": {"$in": ACCEPTING},
                    "paused": {"$ne": True},
                    "end_time": {"$gt": now},
                },
                {"$inc": increments, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER
            )
            if updated:
                return updated
            logger.warning(f"Counter update conflict on raffle {raffle_id}, attempt {attempt + 1}")

        raise ConcurrencyError(f"Could not record entry on raffle {raffle_id} after {self.settings.max_cas_retries} attempts")

    # Closing and cancellation

    async def _cancel(self, raffle_id: str, reason: str, query: dict) -> dict:
        now = self.now()
        updated = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, **query},
            {"$set": {
                "status": RaffleStatus.CANCELLED.value,
                "cancel_reason": reason,
                "cancelled_at": now,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise StateError(f"Raffle {raffle_id} changed state concurrently")

        result = await self.db.entries.update_many(
            {"raffle_id": raffle_id, "status": EntryStatus.CONFIRMED.value},
            {"$set": {"status": EntryStatus.REFUND_PENDING.value, "updated_at": now}}
        )
        logger.info(f"Raffle {raffle_id} cancelled ({reason}); {result.modified_count} entries queued for refund")
        return updated

    async def close_raffle(self, raffle_id: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        if raffle["status"] not in ACCEPTING:
            raise StateError(f"Raffle {raffle_id} is {raffle['status']} and cannot be closed")

        now = self.now()
        if now < raffle["end_time"]:
            raise NotReadyError(f"Raffle {raffle_id} ends at {raffle['end_time'].isoformat()}")

        participants = raffle.get("total_participants", 0)
        minimum = raffle.get("min_participants", 1)
        if participants < minimum:
            await self._cancel(
                raffle_id,
                f"Insufficient participants: {participants} of {minimum} required",
                {"status": {"$in": ACCEPTING}},
            )
            raise InsufficientParticipantsError(raffle_id, participants, minimum)

        updated = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, "status": {"$in": ACCEPTING}},
            {"$set": {"status": RaffleStatus.DRAWING.value, "closed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise StateError(f"Raffle {raffle_id} changed state concurrently")
        logger.info(f"Raffle {raffle_id} closed with {participants} participants, pool {raffle['total_pool']}")
        return updated

    async def close_expired_raffles(self) -> dict:
        now = self.now()
        raffles = await self.db.raffles.find(
            {"status": {"$in": ACCEPTING}, "end_time": {"$lte": now}}
        ).to_list(None)

        summary = {"processed": len(raffles), "closed": 0, "cancelled": 0, "failed": 0}
        for raffle in raffles:
            try:
                await self.close_raffle(raffle["_id"])
                summary["closed"] += 1
            except InsufficientParticipantsError:
                summary["cancelled"] += 1
            except ServiceError as e:
                summary["failed"] += 1
                logger.error(f"Failed to close raffle {raffle['_id']}: {e.message}")
        return summary

    async def cancel_raffle(self, raffle_id: str, reason: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        status = raffle["status"]

        if status in CANCELLABLE:
            return await self._cancel(raffle_id, reason, {"status": {"$in": CANCELLABLE}})
        if status == RaffleStatus.DRAWING.value:
            if raffle.get("draw"):
                raise StateError(
                    f"Raffle {raffle_id} is awaiting randomness; use emergency cancel after the cooldown"
                )
            return await self._cancel(raffle_id, reason, {"status": RaffleStatus.DRAWING.value, "draw": None})
        raise StateError(f"Raffle {raffle_id} is {status} and cannot be cancelled")

    async def emergency_cancel(self, raffle_id: str, reason: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        if raffle["status"] != RaffleStatus.DRAWING.value:
            raise StateError(f"Emergency cancel only applies to drawing raffles; {raffle_id} is {raffle['status']}")

        draw = raffle.get("draw") or {}
        since = draw.get("requested_at") or raffle.get("closed_at") or raffle["end_time"]
        cooldown = timedelta(hours=self.settings.emergency_cancel_hours)
        elapsed = self.now() - since
        if elapsed < cooldown:
            remaining = cooldown - elapsed
            raise CooldownError(
                f"Emergency cancel available in {int(remaining.total_seconds() // 60)} minutes"
            )

        logger.warning(f"Emergency cancel of raffle {raffle_id}: {reason}")
        return await self._cancel(raffle_id, f"Emergency: {reason}", {"status": RaffleStatus.DRAWING.value})

    async def _mark_refunded(self, entry: dict, tx_ref: str):
        now = self.now()
        await self.db.entries.update_one(
            {"_id": entry["_id"], "status": EntryStatus.REFUND_PROCESSING.value},
            {"$set": {"status": EntryStatus.REFUNDED.value, "refund_tx_ref": tx_ref, "failure_reason": None,
                      "refunded_at": now, "updated_at": now}}
        )

    async def _mark_refund_failed(self, entry: dict, reason: str):
        await self.db.entries.update_one(
            {"_id": entry["_id"], "status": EntryStatus.REFUND_PROCESSING.value},
            {"$set": {"status": EntryStatus.REFUND_FAILED.value, "failure_reason": reason, "updated_at": self.now()}}
        )

    async def _lookup_refund(self, entry: dict) -> Optional[str]:
        return await self.call_external(
            lambda: self.ledger.find_transfer(entry["refund_transfer_ref"]),
            f"refund lookup for entry {entry['_id']}"
        )

    async def _resolve_refund(self, entry: dict, stale_before) -> str:
        """Settle a refund left processing; never re-sends"""
        try:
            tx_ref = await self._lookup_refund(entry) if entry.get("refund_transfer_ref") else None
        except ExternalServiceError as e:
            logger.error(f"Refund lookup for entry {entry['_id']} failed: {e.message}")
            return EntryStatus.REFUND_PROCESSING.value
        if tx_ref:
            await self._mark_refunded(entry, tx_ref)
            return EntryStatus.REFUNDED.value
        if (entry.get("refund_processing_at") or entry["updated_at"]) <= stale_before:
            await self._mark_refund_failed(entry, "Refund transfer not found on ledger")
            return EntryStatus.REFUND_FAILED.value
        return EntryStatus.REFUND_PROCESSING.value

    async def _refund(self, entry: dict) -> Optional[str]:
        """Claim one refund and send it. Returns the resulting status, or None if the claim was lost."""
        now = self.now()
        claimed = await self.db.entries.find_one_and_update(
            {"_id": entry["_id"], "status": entry["status"]},
            {"$set": {"status": EntryStatus.REFUND_PROCESSING.value, "refund_transfer_ref": f"refund:{entry['_id']}",
                      "refund_processing_at": now, "updated_at": now},
             "$inc": {"refund_attempts": 1}},
            return_document=ReturnDocument.AFTER
        )
        if not claimed:
            return None

        if entry["status"] == EntryStatus.REFUND_FAILED.value:
            try:
                existing = await self._lookup_refund(claimed)
            except ExternalServiceError as e:
                await self._mark_refund_failed(claimed, f"Refund lookup failed: {e.message}")
                return EntryStatus.REFUND_FAILED.value
            if existing:
                await self._mark_refunded(claimed, existing)
                return EntryStatus.REFUNDED.value

        try:
            tx_ref = await self.call_external(
                lambda: self.ledger.send_transfer(claimed["participant"], claimed["total_paid"],
                                                  self.settings.payout_asset, claimed["refund_transfer_ref"]),
                f"refund of entry {entry['_id']}",
                retry=False
            )
        except TransientExternalError as e:
            await self.db.entries.update_one(
                {"_id": entry["_id"], "status": EntryStatus.REFUND_PROCESSING.value},
                {"$set": {"failure_reason": f"Refund outcome unknown: {e.message}", "updated_at": self.now()}}
            )
            logger.warning(f"Refund of entry {entry['_id']} outcome unknown, left processing: {e.message}")
            return EntryStatus.REFUND_PROCESSING.value
        except ExternalServiceError as e:
            await self._mark_refund_failed(claimed, e.message)
            logger.error(f"Refund of entry {entry['_id']} failed: {e.message}", exc_info=True)
            return EntryStatus.REFUND_FAILED.value

        await self._mark_refunded(claimed, tx_ref)
        return EntryStatus.REFUNDED.value

    async def process_refunds(self, raffle_id: str) -> dict:
        """Refund a cancelled raffle's entries, or entries rejected after payment on any raffle.

        Refunds still ``refund_processing`` are resolved by ledger lookup,
        never sent again.
        """
        raffle = await self.get_raffle(raffle_id)
        query = {
            "raffle_id": raffle_id,
            "status": {"$in": [
                EntryStatus.REFUND_PENDING.value,
                EntryStatus.REFUND_FAILED.value,
                EntryStatus.REFUND_PROCESSING.value,
            ]},
        }
        if raffle["status"] != RaffleStatus.CANCELLED.value:
            query["rejected"] = True
        entries = await self.db.entries.find(query).to_list(None)

        stale_before = self.transfer_stale_before()
        summary = {"total": len(entries), "successful": 0, "failed": 0, "unresolved": 0, "skipped": 0}
        for entry in entries:
            if entry["status"] == EntryStatus.REFUND_PROCESSING.value:
                result = await self._resolve_refund(entry, stale_before)
            else:
                result = await self._refund(entry)

            if result == EntryStatus.REFUNDED.value:
                summary["successful"] += 1
            elif result == EntryStatus.REFUND_FAILED.value:
                summary["failed"] += 1
            elif result == EntryStatus.REFUND_PROCESSING.value:
                summary["unresolved"] += 1
            else:
                summary["skipped"] += 1

        logger.info(f"Refunds for raffle {raffle_id}: {summary}")
        return summary

    async def process_pending_refunds(self) -> dict:
        """Cron sweep over every raffle with refunds outstanding"""
        entries = await self.db.entries.find({"status": {"$in": [
            EntryStatus.REFUND_PENDING.value,
            EntryStatus.REFUND_FAILED.value,
            EntryStatus.REFUND_PROCESSING.value,
        ]}}).to_list(None)
        raffle_ids = sorted({e["raffle_id"] for e in entries})

        summary = {"raffles": len(raffle_ids), "successful": 0, "failed": 0, "unresolved": 0}
        for raffle_id in raffle_ids:
            try:
                result = await self.process_refunds(raffle_id)
            except ServiceError as e:
                logger.error(f"Refund sweep for raffle {raffle_id} failed: {e.message}")
                continue
            for key in ("successful", "failed", "unresolved"):
                summary[key] += result[key]
        return summary

    # Draw

    async def is_ready_for_draw(self, raffle_id: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        status = raffle["status"]
        now = self.now()

        if status == RaffleStatus.DRAWING.value:
            draw = raffle.get("draw")
            if draw and draw.get("phase") == DrawPhase.AWAITING.value:
                return {"ready": False, "reason": "Randomness already requested"}
            return {"ready": True, "reason": None}
        if status in ACCEPTING:
            if now < raffle["end_time"]:
                return {"ready": False, "reason": "Raffle has not ended yet"}
            if raffle.get("total_participants", 0) < raffle.get("min_participants", 1):
                return {"ready": False, "reason": "Not enough participants"}
            return {"ready": True, "reason": None}
        return {"ready": False, "reason": f"Raffle is {status}"}

    def _draw_state(self, raffle: dict, winners: Optional[List[dict]] = None) -> dict:
        draw = raffle.get("draw") or {}
        return {
            "raffle_id": raffle["_id"],
            "status": raffle["status"],
            "phase": draw.get("phase"),
            "request_id": draw.get("request_id"),
            "requested_at": draw.get("requested_at"),
            "timed_out": draw.get("timed_out", False),
            "winners": winners or [],
        }

    async def trigger_draw(self, raffle_id: str) -> dict:
        raffle = await self.get_raffle(raffle_id)

        if raffle["status"] == RaffleStatus.COMPLETED.value:
            return self._draw_state(raffle, await self.get_winners(raffle_id))
        if raffle["status"] in ACCEPTING:
            raffle = await self.close_raffle(raffle_id)
        if raffle["status"] != RaffleStatus.DRAWING.value:
            raise StateError(f"Raffle {raffle_id} is {raffle['status']} and cannot be drawn")

        if raffle.get("draw"):
            return self._draw_state(raffle)

        request = await self.call_external(
            lambda: self.randomness.request_randomness(raffle_id),
            f"randomness request for raffle {raffle_id}"
        )
        now = self.now()
        registered = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, "status": RaffleStatus.DRAWING.value, "draw": None},
            {"$set": {
                "draw": {
                    "phase": DrawPhase.AWAITING.value,
                    "request_id": request.request_id,
                    "requested_at": now,
                    "timed_out": False,
                },
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER
        )
        if not registered:
            logger.warning(f"Raffle {raffle_id} already has a randomness request; dropping {request.request_id}")
            current = await self.get_raffle(raffle_id)
            if current["status"] == RaffleStatus.COMPLETED.value:
                return self._draw_state(current, await self.get_winners(raffle_id))
            return self._draw_state(current)

        logger.info(f"Randomness requested for raffle {raffle_id}: {request.request_id}")
        if request.random_value is not None:
            return await self._complete_draw(registered, request.random_value)
        return self._draw_state(registered)

    async def fulfill_randomness(self, request_id: str, random_value: str) -> dict:
        raffle = await self.db.raffles.find_one({"draw.request_id": request_id})
        if not raffle:
            raise NotFoundError("Randomness request", request_id)

        if raffle["status"] == RaffleStatus.COMPLETED.value:
            if raffle["draw"].get("random_value") != random_value:
                logger.warning(f"Conflicting randomness for completed raffle {raffle['_id']} ignored")
            return self._draw_state(raffle, await self.get_winners(raffle["_id"]))
        if raffle["status"] != RaffleStatus.DRAWING.value:
            raise StateError(f"Raffle {raffle['_id']} is {raffle['status']}; randomness no longer needed")

        return await self._complete_draw(raffle, random_value)

    async def _complete_draw(self, raffle: dict, random_value: str) -> dict:
        raffle_id = raffle["_id"]
        entries = await self.db.entries.find(
            {"raffle_id": raffle_id, "status": EntryStatus.CONFIRMED.value}
        ).to_list(None)

        selections = select_winners(
            entries, random_value, raffle["winner_count"], raffle.get("allow_repeat_wins", False)
        )
        allocations = distribute_prizes(
            raffle["total_pool"],
            raffle["protocol_fee_percent"],
            len(selections),
            raffle.get("prize_tiers"),
            raffle["winner_count"],
        )

        now = self.now()
        for selection, allocation in zip(selections, allocations):
            try:
                await self.db.winners.insert_one({
                    "_id": f"{raffle_id}:{selection.position}",
                    "raffle_id": raffle_id,
                    "participant": selection.participant,
                    "position": selection.position,
                    "tier": allocation.tier,
                    "ticket_number": selection.ticket_number,
                    "total_tickets": selection.total_tickets,
                    "seed_hash": selection.seed_hash,
                    "prize": allocation.prize,
                    "status": PayoutStatus.PENDING.value,
                    "payout_tx_ref": None,
                    "failure_reason": None,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                    "paid_at": None,
                })
            except DuplicateKeyError:
                logger.warning(f"Winner {raffle_id}:{selection.position} already recorded")

        draw = raffle["draw"]
        completed = await self.db.raffles.find_one_and_update(
            {"_id": raffle_id, "status": RaffleStatus.DRAWING.value, "draw.request_id": draw["request_id"]},
            {"$set": {
                "status": RaffleStatus.COMPLETED.value,
                "draw": {
                    **draw,
                    "phase": DrawPhase.RESOLVED.value,
                    "random_value": random_value,
                    "resolved_at": now,
                },
                "settlement_ref": draw["request_id"],
                "completed_at": now,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER
        )
        if not completed:
            logger.warning(f"Raffle {raffle_id} left drawing before completion was recorded")
            completed = await self.get_raffle(raffle_id)
        else:
            logger.info(f"Raffle {raffle_id} completed with {len(selections)} winners")

        return self._draw_state(completed, await self.get_winners(raffle_id))

    async def poll_pending_draws(self) -> dict:
        raffles = await self.db.raffles.find({
            "status": RaffleStatus.DRAWING.value,
            "draw.phase": DrawPhase.AWAITING.value,
        }).to_list(None)

        now = self.now()
        timeout = timedelta(minutes=self.settings.randomness_timeout_minutes)
        summary = {"processed": len(raffles), "completed": 0, "pending": 0, "timed_out": [], "failed": 0}

        for raffle in raffles:
            draw = raffle["draw"]
            try:
                value = await self.call_external(
                    lambda: self.randomness.get_randomness(draw["request_id"]),
                    f"randomness poll for raffle {raffle['_id']}"
                )
            except ExternalServiceError as e:
                summary["failed"] += 1
                logger.error(f"Polling randomness for raffle {raffle['_id']} failed: {e.message}")
                continue

            if value is not None:
                await self._complete_draw(raffle, value)
                summary["completed"] += 1
            elif now - draw["requested_at"] >= timeout:
                await self.db.raffles.update_one(
                    {"_id": raffle["_id"], "draw.request_id": draw["request_id"]},
                    {"$set": {"draw.timed_out": True, "updated_at": now}}
                )
                summary["timed_out"].append(raffle["_id"])
                logger.error(f"Randomness for raffle {raffle['_id']} timed out (request {draw['request_id']})")
            else:
                summary["pending"] += 1
        return summary

    async def check_draw(self, raffle_id: str) -> dict:
        raffle = await self.get_raffle(raffle_id)
        draw = raffle.get("draw") or {}
        if raffle["status"] == RaffleStatus.DRAWING.value and draw.get("phase") == DrawPhase.AWAITING.value:
            timeout = timedelta(minutes=self.settings.randomness_timeout_minutes)
            if draw.get("timed_out") or self.now() - draw["requested_at"] >= timeout:
                raise DrawFailedError(
                    f"Randomness for raffle {raffle_id} not delivered within "
                    f"{self.settings.randomness_timeout_minutes} minutes"
                )
        winners = None
        if raffle["status"] == RaffleStatus.COMPLETED.value:
            winners = await self.get_winners(raffle_id)
        return self._draw_state(raffle, winners)
