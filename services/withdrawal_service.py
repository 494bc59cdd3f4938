import logging
from datetime import datetime

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models.withdrawal import WithdrawalStatus
from services.base import BaseService, new_id, normalize_address
from services.errors import (
    AlreadyWithdrawnError,
    ExternalServiceError,
    InsufficientBalanceError,
    TransientExternalError,
    ValidationError,
    WindowClosedError,
)
from services.ledger_service import LedgerAdapter, TransferStatus
from services.pagination import paginate
from services.referral_service import ReferralService
from services.stake_service import StakeService

logger = logging.getLogger(__name__)


def withdrawal_period(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


class WithdrawalService(BaseService):
    def __init__(self, db, settings, ledger: LedgerAdapter, stakes: StakeService,
                 referrals: ReferralService, clock=None):
        super().__init__(db, settings, clock)
        self.ledger = ledger
        self.stakes = stakes
        self.referrals = referrals

    def is_withdrawal_day_allowed(self, now: datetime = None) -> bool:
        now = now or self.now()
        return now.day == self.settings.withdrawal_day

    async def has_withdrawn_this_month(self, owner: str, now: datetime = None) -> bool:
        now = now or self.now()
        claim = await self.db.withdrawal_periods.find_one({"_id": f"{normalize_address(owner)}:{withdrawal_period(now)}"})
        return claim is not None

    async def total_withdrawn(self, owner: str) -> float:
        withdrawals = await self.db.withdrawals.find({
            "owner": owner,
            "status": {"$ne": WithdrawalStatus.FAILED.value},
        }).to_list(None)
        return round(sum(w["amount"] for w in withdrawals), 6)

    async def balance_breakdown(self, owner: str) -> dict:
        owner = normalize_address(owner)
        now = self.now()
        rewards = await self.stakes.total_rewards(owner)
        commissions = await self.referrals.total_commissions(owner)
        withdrawn = await self.total_withdrawn(owner)
        return {
            "total_rewards": rewards,
            "total_commissions": commissions,
            "total_withdrawn": withdrawn,
            "available": max(0.0, round(rewards + commissions - withdrawn, 6)),
            "withdrawal_allowed_today": self.is_withdrawal_day_allowed(now),
            "has_withdrawn_this_month": await self.has_withdrawn_this_month(owner, now),
        }

    async def available_balance(self, owner: str) -> float:
        return (await self.balance_breakdown(owner))["available"]

    async def create_withdrawal(self, owner: str, destination: str, amount: float) -> dict:
        owner = normalize_address(owner)
        now = self.now()

        if not self.is_withdrawal_day_allowed(now):
            raise WindowClosedError(
                f"Withdrawals are only allowed on day {self.settings.withdrawal_day} of the month"
            )
        destination = (destination or "").strip()
        if not destination:
            raise ValidationError("destination", "must not be empty")
        if not self.settings.min_withdrawal <= amount <= self.settings.max_withdrawal:
            raise ValidationError(
                "amount", f"must be between {self.settings.min_withdrawal} and {self.settings.max_withdrawal}"
            )

        period = withdrawal_period(now)
        claim_id = f"{owner}:{period}"
        if await self.db.withdrawal_periods.find_one({"_id": claim_id}):
            raise AlreadyWithdrawnError(f"Already withdrew in {period}")

        available = await self.available_balance(owner)
        if amount > available:
            raise InsufficientBalanceError(amount, available)

        withdrawal_id = new_id()
        try:
            await self.db.withdrawal_periods.insert_one({"_id": claim_id, "withdrawal_id": withdrawal_id, "claimed_at": now})
        except DuplicateKeyError:
            raise AlreadyWithdrawnError(f"Already withdrew in {period}")

        withdrawal = {
            "_id": withdrawal_id,
            "owner": owner,
            "amount": float(amount),
            "destination": destination,
            "status": WithdrawalStatus.PENDING.value,
            "period": period,
            "tx_ref": None,
            "failure_reason": None,
            "requested_at": now,
            "completed_at": None,
        }
        await self.db.withdrawals.insert_one(withdrawal)
        logger.info(f"Withdrawal {withdrawal_id} of {amount} requested by {owner}")

        return await self._send(withdrawal)

    async def _send(self, withdrawal: dict) -> dict:
        """Claim a pending withdrawal and submit its transfer once.

        A transient send error leaves the withdrawal ``processing`` with its
        month claim held; ``process_pending_withdrawals`` settles it by lookup.
        """
        now = self.now()
        claimed = await self.db.withdrawals.find_one_and_update(
            {"_id": withdrawal["_id"], "status": WithdrawalStatus.PENDING.value},
            {"$set": {"status": WithdrawalStatus.PROCESSING.value, "transfer_ref": f"withdrawal:{withdrawal['_id']}",
                      "processing_at": now},
             "$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER
        )
        if not claimed:
            return await self.db.withdrawals.find_one({"_id": withdrawal["_id"]})

        try:
            tx_ref = await self.call_external(
                lambda: self.ledger.send_transfer(claimed["destination"], claimed["amount"],
                                                  self.settings.payout_asset, claimed["transfer_ref"]),
                f"withdrawal {withdrawal['_id']}",
                retry=False
            )
        except TransientExternalError as e:
            logger.warning(f"Withdrawal {withdrawal['_id']} outcome unknown, left processing: {e.message}")
            return await self.db.withdrawals.find_one_and_update(
                {"_id": withdrawal["_id"], "status": WithdrawalStatus.PROCESSING.value},
                {"$set": {"failure_reason": f"Transfer outcome unknown: {e.message}"}},
                return_document=ReturnDocument.AFTER
            )
        except ExternalServiceError as e:
            logger.error(f"Withdrawal {withdrawal['_id']} failed: {e.message}", exc_info=True)
            return await self._fail(claimed, e.message)

        return await self._complete(claimed, tx_ref)

    async def _complete(self, withdrawal: dict, tx_ref: str) -> dict:
        completed = await self.db.withdrawals.find_one_and_update(
            {"_id": withdrawal["_id"], "status": WithdrawalStatus.PROCESSING.value},
            {"$set": {"status": WithdrawalStatus.COMPLETED.value, "tx_ref": tx_ref, "failure_reason": None,
                      "completed_at": self.now()}},
            return_document=ReturnDocument.AFTER
        )
        if completed:
            logger.info(f"Withdrawal {withdrawal['_id']} of {withdrawal['amount']} sent: {tx_ref}")
            return completed
        return await self.db.withdrawals.find_one({"_id": withdrawal["_id"]})

    async def _fail(self, withdrawal: dict, reason: str) -> dict:
        updated = await self.db.withdrawals.find_one_and_update(
            {"_id": withdrawal["_id"],
             "status": {"$in": [WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value]}},
            {"$set": {"status": WithdrawalStatus.FAILED.value, "failure_reason": reason}},
            return_document=ReturnDocument.AFTER
        )
        if updated:
            await self.db.withdrawal_periods.delete_one({
                "_id": f"{withdrawal['owner']}:{withdrawal['period']}",
                "withdrawal_id": withdrawal["_id"],
            })
        return updated or await self.db.withdrawals.find_one({"_id": withdrawal["_id"]})

    async def _check_submitted(self, withdrawal: dict) -> str:
        """Follow a withdrawal whose transfer reference is known"""
        status = await self.call_external(
            lambda: self.ledger.get_transfer_status(withdrawal["tx_ref"]),
            f"transfer status for withdrawal {withdrawal['_id']}"
        )
        if status == TransferStatus.COMPLETED:
            await self.db.withdrawals.update_one(
                {"_id": withdrawal["_id"],
                 "status": {"$in": [WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value]}},
                {"$set": {"status": WithdrawalStatus.COMPLETED.value, "completed_at": self.now()}}
            )
            return WithdrawalStatus.COMPLETED.value
        if status == TransferStatus.FAILED:
            await self._fail(withdrawal, "Transfer failed on ledger")
            return WithdrawalStatus.FAILED.value
        return WithdrawalStatus.PROCESSING.value

    async def _resolve_unknown(self, withdrawal: dict, stale_before: datetime) -> str:
        """Settle a claimed withdrawal with no known transfer; never re-sends"""
        tx_ref = None
        if withdrawal.get("transfer_ref"):
            tx_ref = await self.call_external(
                lambda: self.ledger.find_transfer(withdrawal["transfer_ref"]),
                f"transfer lookup for withdrawal {withdrawal['_id']}"
            )
        if tx_ref:
            return (await self._complete(withdrawal, tx_ref))["status"]
        if (withdrawal.get("processing_at") or withdrawal["requested_at"]) <= stale_before:
            return (await self._fail(withdrawal, "Transfer not found on ledger"))["status"]
        return WithdrawalStatus.PROCESSING.value

    async def process_pending_withdrawals(self) -> dict:
        open_withdrawals = await self.db.withdrawals.find({
            "status": {"$in": [WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value]},
        }).to_list(None)
        stale_before = self.transfer_stale_before()
        summary = {"processed": len(open_withdrawals), "completed": 0, "failed": 0, "pending": 0}

        for withdrawal in open_withdrawals:
            try:
                if withdrawal.get("tx_ref"):
                    status = await self._check_submitted(withdrawal)
                elif withdrawal["status"] == WithdrawalStatus.PROCESSING.value:
                    status = await self._resolve_unknown(withdrawal, stale_before)
                else:
                    status = (await self._send(withdrawal))["status"]
            except ExternalServiceError as e:
                logger.error(f"Could not settle withdrawal {withdrawal['_id']}: {e.message}")
                status = WithdrawalStatus.PROCESSING.value

            if status == WithdrawalStatus.COMPLETED.value:
                summary["completed"] += 1
            elif status == WithdrawalStatus.FAILED.value:
                summary["failed"] += 1
            else:
                summary["pending"] += 1
        return summary

    async def withdrawal_history(self, owner: str, cursor: str = None, limit: int = None) -> dict:
        return await paginate(self.db.withdrawals, {"owner": normalize_address(owner)}, self.settings,
                              cursor, limit, sort_field="requested_at")
