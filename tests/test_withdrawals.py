import asyncio
from dataclasses import replace
from datetime import datetime

import pytest

from services.errors import (
    AlreadyWithdrawnError,
    InsufficientBalanceError,
    ValidationError,
    WindowClosedError,
)
from services.ledger_service import TransferStatus
from services.withdrawal_service import WithdrawalService


@pytest.fixture
def funded(stake_service, ledger, clock):
    """An active 1000 stake started on 2025-01-01, with the clock on 2025-04-01"""
    async def _funded(owner="0xaaa"):
        stake = await stake_service.create_stake(owner, 1000)
        ledger.confirm(f"stake-{owner}", 1000)
        await stake_service.submit_stake_transaction(stake["_id"], f"stake-{owner}", owner)
        clock.set(datetime(2025, 4, 1, 12, 0))
        return stake
    return _funded


async def test_withdrawal_day_gating(withdrawal_service, clock):
    clock.set(datetime(2025, 4, 2, 9, 0))
    assert not withdrawal_service.is_withdrawal_day_allowed()
    with pytest.raises(WindowClosedError):
        await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 50)

    clock.set(datetime(2025, 4, 1, 9, 0))
    assert withdrawal_service.is_withdrawal_day_allowed()


async def test_available_balance(funded, withdrawal_service):
    await funded()
    breakdown = await withdrawal_service.balance_breakdown("0xaaa")
    assert breakdown["total_rewards"] == 240.0
    assert breakdown["total_commissions"] == 0
    assert breakdown["available"] == 240.0
    assert breakdown["withdrawal_allowed_today"] is True
    assert breakdown["has_withdrawn_this_month"] is False


async def test_one_withdrawal_per_month(funded, withdrawal_service, ledger, clock):
    await funded()

    withdrawal = await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 100)
    assert withdrawal["status"] == "completed"
    assert withdrawal["period"] == "2025-04"
    assert ledger.transfers[-1]["destination"] == "0xdest"
    assert await withdrawal_service.has_withdrawn_this_month("0xaaa")

    with pytest.raises(AlreadyWithdrawnError):
        await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 10)

    assert await withdrawal_service.available_balance("0xaaa") == 140.0

    clock.set(datetime(2025, 5, 1, 12, 0))
    second = await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 200)
    assert second["period"] == "2025-05"
    assert await withdrawal_service.available_balance("0xaaa") == 20.0


async def test_insufficient_balance(funded, withdrawal_service):
    await funded()
    with pytest.raises(InsufficientBalanceError):
        await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 500)
    assert not await withdrawal_service.has_withdrawn_this_month("0xaaa")


async def test_withdrawal_input_validation(funded, withdrawal_service):
    await funded()
    with pytest.raises(ValidationError):
        await withdrawal_service.create_withdrawal("0xaaa", "  ", 50)
    with pytest.raises(ValidationError):
        await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 1)


async def test_failed_transfer_releases_month(funded, withdrawal_service, ledger):
    await funded()
    ledger.failing_destinations.add("0xbad")

    failed = await withdrawal_service.create_withdrawal("0xaaa", "0xbad", 100)
    assert failed["status"] == "failed"
    assert not await withdrawal_service.has_withdrawn_this_month("0xaaa")
    assert await withdrawal_service.available_balance("0xaaa") == 240.0

    retried = await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 100)
    assert retried["status"] == "completed"


async def test_commissions_count_towards_balance(funded, referral_service, withdrawal_service):
    await referral_service.set_referrer("0xbbb", "0xaaa")
    await funded("0xbbb")
    assert (await withdrawal_service.balance_breakdown("0xaaa"))["total_commissions"] == 80.0


async def test_pending_withdrawals_resolve(funded, withdrawal_service, db, ledger):
    await funded()
    await db.withdrawals.insert_many([
        {"_id": "w1", "owner": "0xaaa", "amount": 10.0, "destination": "0xd", "status": "pending",
         "period": "2025-03", "tx_ref": "sent-1", "failure_reason": None,
         "requested_at": datetime(2025, 3, 1), "completed_at": None},
        {"_id": "w2", "owner": "0xaaa", "amount": 10.0, "destination": "0xd", "status": "pending",
         "period": "2025-02", "tx_ref": "sent-2", "failure_reason": None,
         "requested_at": datetime(2025, 2, 1), "completed_at": None},
    ])
    ledger.transfer_statuses["sent-2"] = TransferStatus.FAILED

    summary = await withdrawal_service.process_pending_withdrawals()
    assert summary == {"processed": 2, "completed": 1, "failed": 1, "pending": 0}
    assert (await db.withdrawals.find_one({"_id": "w2"}))["status"] == "failed"


async def test_sweep_does_not_resend_in_flight_withdrawal(funded, withdrawal_service, ledger):
    await funded()
    started = asyncio.Event()
    release = asyncio.Event()

    async def hold(reference):
        started.set()
        await release.wait()

    ledger.on_send = hold
    request = asyncio.create_task(withdrawal_service.create_withdrawal("0xaaa", "0xdest", 50))
    await started.wait()
    ledger.on_send = None

    summary = await withdrawal_service.process_pending_withdrawals()
    assert summary == {"processed": 1, "completed": 0, "failed": 0, "pending": 1}

    release.set()
    withdrawal = await request
    assert withdrawal["status"] == "completed"
    assert len(ledger.transfers) == 1


async def test_lost_transfer_reply_is_settled_by_lookup(funded, db, settings, ledger, stake_service,
                                                         referral_service, clock):
    withdrawals = WithdrawalService(db, replace(settings, max_external_retries=3), ledger,
                                    stake_service, referral_service, clock)
    await funded()
    ledger.lost_responses.add("0xdest")

    withdrawal = await withdrawals.create_withdrawal("0xaaa", "0xdest", 100)
    assert withdrawal["status"] == "processing"
    assert len(ledger.transfers) == 1
    assert await withdrawals.has_withdrawn_this_month("0xaaa")
    assert await withdrawals.available_balance("0xaaa") == 140.0

    summary = await withdrawals.process_pending_withdrawals()
    assert summary == {"processed": 1, "completed": 1, "failed": 0, "pending": 0}
    settled = await db.withdrawals.find_one({"_id": withdrawal["_id"]})
    assert settled["status"] == "completed"
    assert settled["tx_ref"] == "out-1"
    assert len(ledger.transfers) == 1


async def test_unsent_withdrawal_fails_after_resolution_window(funded, withdrawal_service, ledger, clock):
    await funded()
    ledger.unreachable.add("0xdest")

    withdrawal = await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 100)
    assert withdrawal["status"] == "processing"

    summary = await withdrawal_service.process_pending_withdrawals()
    assert summary["pending"] == 1

    clock.advance(minutes=31)
    summary = await withdrawal_service.process_pending_withdrawals()
    assert summary["failed"] == 1
    assert ledger.transfers == []
    assert not await withdrawal_service.has_withdrawn_this_month("0xaaa")
    assert await withdrawal_service.available_balance("0xaaa") == 240.0


async def test_withdrawal_history(funded, withdrawal_service, clock):
    await funded()
    await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 50)
    clock.set(datetime(2025, 5, 1, 12, 0))
    await withdrawal_service.create_withdrawal("0xaaa", "0xdest", 50)

    page = await withdrawal_service.withdrawal_history("0xaaa", limit=1)
    assert page["has_more"]
    assert page["items"][0]["period"] == "2025-05"

    rest = await withdrawal_service.withdrawal_history("0xaaa", cursor=page["next_cursor"], limit=1)
    assert [w["period"] for w in rest["items"]] == ["2025-04"]
    assert not rest["has_more"]
