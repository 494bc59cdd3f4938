"""
Prize payout settlement.

Every send is preceded by a conditional claim of the payout record
(``pending``/``failed`` -> ``processing``), so repeated or concurrent calls
never transfer the same prize twice. Transfers carry a stable reference per
payout, so the ledger can be asked whether an earlier send landed. A send
rejected by the ledger leaves the payout ``failed``; a send whose outcome is
unknown leaves it ``processing`` until ``resolve_processing`` finds the
transfer or the claim goes stale. It is never assumed paid.
"""
import logging
from typing import Dict, List, Optional

from pymongo import ReturnDocument

from models.raffle import RaffleStatus
from models.winner import (
    CancelPayout,
    PayoutStatus,
    ProcessPayouts,
    RetryAllPayouts,
    RetryPayout,
)
from services.base import BaseService
from services.errors import (
    DuplicateError,
    ExternalServiceError,
    NotFoundError,
    StateError,
    TransientExternalError,
    ValidationError,
)
from services.ledger_service import LedgerAdapter

logger = logging.getLogger(__name__)


class PayoutService(BaseService):
    def __init__(self, db, settings, ledger: LedgerAdapter, clock=None):
        super().__init__(db, settings, clock)
        self.ledger = ledger

    async def execute(self, command):
        """Dispatch an admin payout command"""
        if isinstance(command, ProcessPayouts):
            return await self.process_payouts(command.raffle_id)
        if isinstance(command, RetryPayout):
            return await self.retry_payout(command.payout_id)
        if isinstance(command, RetryAllPayouts):
            return await self.retry_all_failed()
        if isinstance(command, CancelPayout):
            return await self.cancel_payout(command.payout_id, command.reason)
        raise ValidationError("action", f"unsupported payout command {type(command).__name__}")

    async def get_payout(self, payout_id: str) -> dict:
        payout = await self.db.winners.find_one({"_id": payout_id})
        if not payout:
            raise NotFoundError("Payout", payout_id)
        return payout

    async def _lookup_transfer(self, payout: dict) -> Optional[str]:
        return await self.call_external(
            lambda: self.ledger.find_transfer(payout["transfer_ref"]),
            f"transfer lookup for payout {payout['_id']}"
        )

    async def _mark_paid(self, payout: dict, tx_ref: str) -> Optional[dict]:
        now = self.now()
        paid = await self.db.winners.find_one_and_update(
            {"_id": payout["_id"], "status": PayoutStatus.PROCESSING.value},
            {"$set": {"status": PayoutStatus.PAID.value, "payout_tx_ref": tx_ref, "failure_reason": None,
                      "paid_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if paid:
            logger.info(f"Paid {payout['prize']} to {payout['participant']} for {payout['_id']}: {tx_ref}")
        return paid

    async def _mark_failed(self, payout: dict, reason: str):
        await self.db.winners.update_one(
            {"_id": payout["_id"], "status": PayoutStatus.PROCESSING.value},
            {"$set": {"status": PayoutStatus.FAILED.value, "failure_reason": reason, "updated_at": self.now()}}
        )

    async def _send(self, payout: dict, from_status: str) -> Optional[str]:
        """Claim the payout and transfer the prize.

        Returns the resulting status, or None when another caller holds the
        claim. A transient send error leaves the payout ``processing`` for
        ``resolve_processing``.
        """
        now = self.now()
        claimed = await self.db.winners.find_one_and_update(
            {"_id": payout["_id"], "status": from_status},
            {"$set": {"status": PayoutStatus.PROCESSING.value, "transfer_ref": f"payout:{payout['_id']}",
                      "processing_at": now, "updated_at": now},
             "$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER
        )
        if not claimed:
            return None

        if from_status == PayoutStatus.FAILED.value:
            try:
                existing = await self._lookup_transfer(claimed)
            except ExternalServiceError as e:
                await self._mark_failed(claimed, f"Transfer lookup failed: {e.message}")
                return PayoutStatus.FAILED.value
            if existing:
                logger.warning(f"Payout {payout['_id']} was already transferred as {existing}")
                await self._mark_paid(claimed, existing)
                return PayoutStatus.PAID.value

        try:
            tx_ref = await self.call_external(
                lambda: self.ledger.send_transfer(claimed["participant"], claimed["prize"],
                                                  self.settings.payout_asset, claimed["transfer_ref"]),
                f"payout {payout['_id']}",
                retry=False
            )
        except TransientExternalError as e:
            await self.db.winners.update_one(
                {"_id": payout["_id"], "status": PayoutStatus.PROCESSING.value},
                {"$set": {"failure_reason": f"Transfer outcome unknown: {e.message}", "updated_at": self.now()}}
            )
            logger.warning(f"Payout {payout['_id']} outcome unknown, left processing: {e.message}")
            return PayoutStatus.PROCESSING.value
        except ExternalServiceError as e:
            await self._mark_failed(claimed, e.message)
            logger.error(f"Payout {payout['_id']} failed: {e.message}", exc_info=True)
            return PayoutStatus.FAILED.value

        await self._mark_paid(claimed, tx_ref)
        return PayoutStatus.PAID.value

    async def process_payouts(self, raffle_id: str) -> dict:
        raffle = await self.db.raffles.find_one({"_id": raffle_id})
        if not raffle:
            raise NotFoundError("Raffle", raffle_id)
        if raffle["status"] != RaffleStatus.COMPLETED.value:
            raise StateError(f"Raffle {raffle_id} is {raffle['status']}; payouts require a completed draw")

        pending = await self.db.winners.find(
            {"raffle_id": raffle_id, "status": PayoutStatus.PENDING.value}
        ).sort("position", 1).to_list(None)

        summary = {"total": len(pending), "successful": 0, "failed": 0, "unresolved": 0, "skipped": 0}
        for payout in pending:
            if payout["prize"] <= 0:
                summary["skipped"] += 1
                continue
            result = await self._send(payout, PayoutStatus.PENDING.value)
            if result == PayoutStatus.PAID.value:
                summary["successful"] += 1
            elif result == PayoutStatus.FAILED.value:
                summary["failed"] += 1
            elif result == PayoutStatus.PROCESSING.value:
                summary["unresolved"] += 1
            else:
                summary["skipped"] += 1

        logger.info(f"Payouts for raffle {raffle_id}: {summary}")
        return summary

    async def retry_payout(self, payout_id: str) -> dict:
        payout = await self.get_payout(payout_id)
        if payout["status"] == PayoutStatus.PAID.value:
            raise DuplicateError(f"Payout {payout_id} already paid ({payout.get('payout_tx_ref')})")
        if payout["status"] != PayoutStatus.FAILED.value:
            raise StateError(f"Payout {payout_id} is {payout['status']}; only failed payouts can be retried")

        await self._send(payout, PayoutStatus.FAILED.value)
        return await self.get_payout(payout_id)

    async def retry_all_failed(self) -> dict:
        failed = await self.db.winners.find({"status": PayoutStatus.FAILED.value}).to_list(None)
        summary = {"total": len(failed), "successful": 0, "failed": 0}
        for payout in failed:
            if await self._send(payout, PayoutStatus.FAILED.value) == PayoutStatus.PAID.value:
                summary["successful"] += 1
            else:
                summary["failed"] += 1
        return summary

    async def resolve_processing(self) -> dict:
        """Settle payouts left ``processing`` by an unknown send outcome or an interrupted run"""
        stale_before = self.transfer_stale_before()
        processing = await self.db.winners.find({"status": PayoutStatus.PROCESSING.value}).to_list(None)

        summary = {"total": len(processing), "paid": 0, "failed": 0, "unresolved": 0}
        for payout in processing:
            try:
                tx_ref = await self._lookup_transfer(payout) if payout.get("transfer_ref") else None
            except ExternalServiceError as e:
                logger.error(f"Transfer lookup for payout {payout['_id']} failed: {e.message}")
                summary["unresolved"] += 1
                continue

            if tx_ref:
                await self._mark_paid(payout, tx_ref)
                summary["paid"] += 1
            elif (payout.get("processing_at") or payout["created_at"]) <= stale_before:
                await self._mark_failed(payout, "Transfer not found on ledger")
                summary["failed"] += 1
            else:
                summary["unresolved"] += 1

        if processing:
            logger.info(f"Resolved processing payouts: {summary}")
        return summary

    async def cancel_payout(self, payout_id: str, reason: str) -> dict:
        payout = await self.get_payout(payout_id)
        if payout["status"] != PayoutStatus.PENDING.value:
            raise StateError(f"Can only cancel pending payouts (current status: {payout['status']})")

        updated = await self.db.winners.find_one_and_update(
            {"_id": payout_id, "status": PayoutStatus.PENDING.value},
            {"$set": {"status": PayoutStatus.FAILED.value, "failure_reason": f"Cancelled by admin: {reason}",
                      "updated_at": self.now()}},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise StateError(f"Payout {payout_id} changed state concurrently")
        logger.info(f"Payout {payout_id} cancelled: {reason}")
        return updated

    async def list_payouts(self, status: str = None) -> List[dict]:
        query = {"status": status} if status else {}
        return await self.db.winners.find(query).sort("created_at", -1).to_list(None)

    @staticmethod
    def _tally(payouts: List[dict]) -> Dict[str, dict]:
        stats = {s.value: {"count": 0, "amount": 0} for s in PayoutStatus}
        for payout in payouts:
            bucket = stats[payout["status"]]
            bucket["count"] += 1
            bucket["amount"] += payout["prize"]
        return stats

    async def payout_summary(self, raffle_id: str) -> dict:
        raffle = await self.db.raffles.find_one({"_id": raffle_id})
        if not raffle:
            raise NotFoundError("Raffle", raffle_id)

        payouts = await self.db.winners.find({"raffle_id": raffle_id}).sort("position", 1).to_list(None)
        by_status: Optional[Dict[str, dict]] = None
        if raffle["status"] == RaffleStatus.COMPLETED.value:
            by_status = self._tally(payouts)
        return {
            "raffle_id": raffle_id,
            "raffle_status": raffle["status"],
            "by_status": by_status,
            "payouts": payouts,
        }

    async def payout_overview(self) -> dict:
        payouts = await self.db.winners.find({}).to_list(None)
        stats = self._tally(payouts)
        pending_raffles = sorted({
            p["raffle_id"] for p in payouts
            if p["status"] in (PayoutStatus.PENDING.value, PayoutStatus.FAILED.value)
        })
        stale_before = self.transfer_stale_before()
        stuck = [
            {"id": p["_id"], "raffle_id": p["raffle_id"], "processing_at": p.get("processing_at"),
             "failure_reason": p.get("failure_reason")}
            for p in payouts
            if p["status"] == PayoutStatus.PROCESSING.value
            and (p.get("processing_at") or p["created_at"]) <= stale_before
        ]
        return {
            "total": len(payouts),
            "by_status": stats,
            "raffles_with_pending": pending_raffles,
            "stuck_processing": stuck,
        }
