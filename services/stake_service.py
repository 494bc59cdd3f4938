import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models.stake import StakeStatus
from services.accrual import add_months, stake_reward
from services.base import BaseService, as_naive_utc, new_id, normalize_address
from services.errors import (
    DuplicateTxError,
    ExternalServiceError,
    NotFoundError,
    OwnershipError,
    RangeError,
    StateError,
    ValidationError,
)
from services.ledger_service import LedgerAdapter, PaymentStatus
from services.pagination import paginate
from services.referral_service import ReferralService

logger = logging.getLogger(__name__)


class StakeService(BaseService):
    def __init__(self, db, settings, ledger: LedgerAdapter, referrals: ReferralService, clock=None):
        super().__init__(db, settings, clock)
        self.ledger = ledger
        self.referrals = referrals

    async def get_stake(self, stake_id: str) -> dict:
        stake = await self.db.stakes.find_one({"_id": stake_id})
        if not stake:
            raise NotFoundError("Stake", stake_id)
        return stake

    async def create_stake(self, owner: str, amount: float) -> dict:
        owner = normalize_address(owner)
        if not self.settings.stake_min <= amount <= self.settings.stake_max:
            raise RangeError("amount", f"must be between {self.settings.stake_min} and {self.settings.stake_max}")

        await self.referrals.ensure_user(owner)
        now = self.now()
        stake = {
            "_id": new_id(),
            "owner": owner,
            "amount": float(amount),
            "config": {
                "duration_months": self.settings.stake_duration_months,
                "monthly_rate": self.settings.stake_monthly_rate,
            },
            "status": StakeStatus.PENDING.value,
            "tx_ref": None,
            "start_date": None,
            "end_date": None,
            "verification_error": None,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.stakes.insert_one(stake)
        logger.info(f"Stake {stake['_id']} of {amount} created for {owner}")
        return stake

    async def submit_stake_transaction(self, stake_id: str, tx_ref: str, owner: str) -> dict:
        tx_ref = (tx_ref or "").strip()
        if not tx_ref:
            raise ValidationError("tx_ref", "transaction reference is required")

        stake = await self.get_stake(stake_id)
        if stake["owner"] != normalize_address(owner):
            raise OwnershipError(f"Stake {stake_id} does not belong to {owner}")
        if stake["status"] != StakeStatus.PENDING.value:
            raise StateError(f"Can only submit a transaction for pending stakes (current status: {stake['status']})")

        try:
            await self.db.ledger_refs.insert_one({
                "_id": tx_ref,
                "kind": "stake",
                "record_id": stake_id,
                "claimed_at": self.now(),
            })
        except DuplicateKeyError:
            raise DuplicateTxError(tx_ref)

        updated = await self.db.stakes.find_one_and_update(
            {"_id": stake_id, "status": StakeStatus.PENDING.value},
            {"$set": {"status": StakeStatus.VERIFYING.value, "tx_ref": tx_ref, "updated_at": self.now()}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            await self.db.ledger_refs.delete_one({"_id": tx_ref, "record_id": stake_id})
            raise StateError(f"Stake {stake_id} changed state concurrently")

        logger.info(f"Stake {stake_id} submitted with {tx_ref}, verifying")
        return await self.verify_stake(updated)

    async def verify_stake(self, stake: dict) -> dict:
        """Confirm a verifying stake with the ledger; activates it on success"""
        try:
            verification = await self.call_external(
                lambda: self.ledger.verify_payment(stake["tx_ref"], stake["amount"], self.settings.treasury_address),
                f"stake verification for {stake['_id']}"
            )
        except ExternalServiceError as e:
            logger.error(f"Could not verify stake {stake['_id']}: {e.message}")
            return await self._flag(stake["_id"], e.message)

        if verification.status == PaymentStatus.NOT_FOUND:
            return stake

        received = verification.amount if verification.amount is not None else stake["amount"]
        tolerance = stake["amount"] * self.settings.payment_tolerance_bps / 10_000
        if verification.status == PaymentStatus.AMOUNT_MISMATCH or abs(received - stake["amount"]) > tolerance:
            logger.warning(f"Stake {stake['_id']} amount mismatch: {received} vs {stake['amount']}")
            return await self._flag(stake["_id"], f"Amount mismatch: received {received}, expected {stake['amount']}")

        start = as_naive_utc(verification.confirmed_at) or self.now()
        end = add_months(start, stake["config"]["duration_months"])
        activated = await self.db.stakes.find_one_and_update(
            {"_id": stake["_id"], "status": StakeStatus.VERIFYING.value},
            {"$set": {
                "status": StakeStatus.ACTIVE.value,
                "start_date": start,
                "end_date": end,
                "verification_error": None,
                "updated_at": self.now(),
            }},
            return_document=ReturnDocument.AFTER
        )
        if not activated:
            return await self.get_stake(stake["_id"])

        logger.info(f"Stake {stake['_id']} active until {end.date().isoformat()}")
        await self.referrals.create_commissions(activated)
        return activated

    async def _flag(self, stake_id: str, reason: str) -> dict:
        return await self.db.stakes.find_one_and_update(
            {"_id": stake_id},
            {"$set": {"verification_error": reason, "updated_at": self.now()}},
            return_document=ReturnDocument.AFTER
        )

    async def verify_pending_stakes(self) -> dict:
        stakes = await self.db.stakes.find({"status": StakeStatus.VERIFYING.value}).to_list(None)
        summary = {"processed": len(stakes), "activated": 0, "pending": 0}
        for stake in stakes:
            result = await self.verify_stake(stake)
            if result["status"] == StakeStatus.ACTIVE.value:
                summary["activated"] += 1
            else:
                summary["pending"] += 1
        return summary

    async def complete_matured_stakes(self) -> int:
        now = self.now()
        result = await self.db.stakes.update_many(
            {"status": StakeStatus.ACTIVE.value, "end_date": {"$lte": now}},
            {"$set": {"status": StakeStatus.COMPLETED.value, "updated_at": now}}
        )
        if result.modified_count:
            logger.info(f"Completed {result.modified_count} matured stakes")
        return result.modified_count

    async def list_stakes(self, owner: str, cursor: str = None, limit: int = None) -> dict:
        page = await paginate(self.db.stakes, {"owner": normalize_address(owner)}, self.settings, cursor, limit)
        now = self.now()
        for stake in page["items"]:
            stake["accrued_reward"] = stake_reward(stake, now)
        return page

    async def total_rewards(self, owner: str) -> float:
        stakes = await self.db.stakes.find({
            "owner": owner,
            "status": {"$in": [StakeStatus.ACTIVE.value, StakeStatus.COMPLETED.value]},
        }).to_list(None)
        now = self.now()
        return round(sum(stake_reward(s, now) for s in stakes), 6)
