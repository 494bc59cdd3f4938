from dataclasses import replace

import pytest

from models.winner import CancelPayout, ProcessPayouts, RetryAllPayouts, RetryPayout
from services.errors import DuplicateError, NotFoundError, StateError
from services.payout_service import PayoutService


@pytest.fixture
def drawn_raffle(make_raffle, enter, raffle_service, clock):
    async def _drawn(winner_count=2):
        raffle = await make_raffle(winner_count=winner_count)
        for participant, tickets in [("0xaaa", 3), ("0xbbb", 2), ("0xccc", 1)]:
            await enter(raffle, participant, tickets)
        clock.advance(days=2)
        await raffle_service.trigger_draw(raffle["_id"])
        return await raffle_service.get_raffle(raffle["_id"])
    return _drawn


async def test_payouts_require_completed_raffle(make_raffle, payout_service):
    raffle = await make_raffle()
    with pytest.raises(StateError):
        await payout_service.process_payouts(raffle["_id"])
    with pytest.raises(NotFoundError):
        await payout_service.process_payouts("missing")


async def test_process_payouts_pays_once(drawn_raffle, payout_service, ledger):
    raffle = await drawn_raffle()

    summary = await payout_service.process_payouts(raffle["_id"])
    assert summary == {"total": 2, "successful": 2, "failed": 0, "unresolved": 0, "skipped": 0}
    assert len(ledger.transfers) == 2

    again = await payout_service.process_payouts(raffle["_id"])
    assert again["total"] == 0
    assert len(ledger.transfers) == 2


async def test_failed_payout_retry(drawn_raffle, payout_service, raffle_service, ledger):
    raffle = await drawn_raffle(winner_count=1)
    winner = (await raffle_service.get_winners(raffle["_id"]))[0]

    ledger.failing_destinations.add(winner["participant"])
    summary = await payout_service.process_payouts(raffle["_id"])
    assert summary["failed"] == 1

    failed = await payout_service.get_payout(winner["_id"])
    assert failed["status"] == "failed"
    assert failed["attempts"] == 1

    ledger.failing_destinations.clear()
    paid = await payout_service.retry_payout(winner["_id"])
    assert paid["status"] == "paid"
    assert paid["payout_tx_ref"] == "out-1"
    assert paid["attempts"] == 2

    with pytest.raises(DuplicateError):
        await payout_service.retry_payout(winner["_id"])


async def test_retry_only_applies_to_failed(drawn_raffle, payout_service, raffle_service):
    raffle = await drawn_raffle(winner_count=1)
    winner = (await raffle_service.get_winners(raffle["_id"]))[0]
    with pytest.raises(StateError):
        await payout_service.retry_payout(winner["_id"])


async def test_cancel_payout(drawn_raffle, payout_service, raffle_service, ledger):
    raffle = await drawn_raffle()
    winners = await raffle_service.get_winners(raffle["_id"])

    cancelled = await payout_service.execute(CancelPayout(payout_id=winners[0]["_id"], reason="fraud review"))
    assert cancelled["status"] == "failed"
    assert cancelled["failure_reason"] == "Cancelled by admin: fraud review"

    with pytest.raises(StateError):
        await payout_service.cancel_payout(winners[0]["_id"], "twice")

    summary = await payout_service.execute(ProcessPayouts(raffle_id=raffle["_id"]))
    assert summary["successful"] == 1
    assert len(ledger.transfers) == 1


async def test_command_dispatch(drawn_raffle, payout_service, raffle_service, ledger):
    raffle = await drawn_raffle()
    winners = await raffle_service.get_winners(raffle["_id"])

    ledger.failing_destinations.update(w["participant"] for w in winners)
    await payout_service.execute(ProcessPayouts(raffle_id=raffle["_id"]))
    ledger.failing_destinations.clear()

    retried = await payout_service.execute(RetryPayout(payout_id=winners[0]["_id"]))
    assert retried["status"] == "paid"

    summary = await payout_service.execute(RetryAllPayouts())
    assert summary == {"total": 1, "successful": 1, "failed": 0}


async def test_payout_summary_before_and_after_draw(make_raffle, drawn_raffle, payout_service, query_service):
    open_raffle = await make_raffle(title="Open")
    summary = await payout_service.payout_summary(open_raffle["_id"])
    assert summary["by_status"] is None
    assert (await query_service.raffle_stats(open_raffle["_id"]))["payout_stats"] is None

    raffle = await drawn_raffle()
    await payout_service.process_payouts(raffle["_id"])
    summary = await payout_service.payout_summary(raffle["_id"])
    assert summary["by_status"]["paid"]["count"] == 2
    assert summary["by_status"]["paid"]["amount"] == 54

    overview = await payout_service.payout_overview()
    assert overview["total"] == 2
    assert overview["raffles_with_pending"] == []


async def test_lost_send_is_resolved_by_lookup(drawn_raffle, raffle_service, db, settings, ledger, clock):
    payouts = PayoutService(db, replace(settings, max_external_retries=3), ledger, clock)
    raffle = await drawn_raffle(winner_count=1)
    winner = (await raffle_service.get_winners(raffle["_id"]))[0]
    ledger.lost_responses.add(winner["participant"])

    summary = await payouts.process_payouts(raffle["_id"])
    assert summary["unresolved"] == 1
    assert len(ledger.transfers) == 1

    current = await payouts.get_payout(winner["_id"])
    assert current["status"] == "processing"
    assert current["failure_reason"].startswith("Transfer outcome unknown")

    resolved = await payouts.resolve_processing()
    assert resolved == {"total": 1, "paid": 1, "failed": 0, "unresolved": 0}
    paid = await payouts.get_payout(winner["_id"])
    assert paid["status"] == "paid"
    assert paid["payout_tx_ref"] == "out-1"
    assert len(ledger.transfers) == 1


async def test_unsent_payout_fails_after_resolution_window(drawn_raffle, payout_service, raffle_service, ledger, clock):
    raffle = await drawn_raffle(winner_count=1)
    winner = (await raffle_service.get_winners(raffle["_id"]))[0]
    ledger.unreachable.add(winner["participant"])

    await payout_service.process_payouts(raffle["_id"])
    assert (await payout_service.resolve_processing())["unresolved"] == 1
    assert (await payout_service.payout_overview())["stuck_processing"] == []

    clock.advance(minutes=31)
    stuck = (await payout_service.payout_overview())["stuck_processing"]
    assert [s["id"] for s in stuck] == [winner["_id"]]

    resolved = await payout_service.resolve_processing()
    assert resolved["failed"] == 1
    assert (await payout_service.get_payout(winner["_id"]))["failure_reason"] == "Transfer not found on ledger"

    ledger.unreachable.clear()
    paid = await payout_service.retry_payout(winner["_id"])
    assert paid["status"] == "paid"
    assert len(ledger.transfers) == 1


async def test_retry_checks_ledger_before_sending(drawn_raffle, payout_service, raffle_service, ledger, db):
    raffle = await drawn_raffle(winner_count=1)
    winner = (await raffle_service.get_winners(raffle["_id"]))[0]
    ledger.lost_responses.add(winner["participant"])
    await payout_service.process_payouts(raffle["_id"])

    await db.winners.update_one({"_id": winner["_id"]}, {"$set": {"status": "failed"}})
    ledger.lost_responses.clear()
    ledger.failing_destinations.add(winner["participant"])

    paid = await payout_service.retry_payout(winner["_id"])
    assert paid["status"] == "paid"
    assert paid["payout_tx_ref"] == "out-1"
    assert len(ledger.transfers) == 1


async def test_user_wins(drawn_raffle, raffle_service, query_service):
    raffle = await drawn_raffle(winner_count=2)
    winners = await raffle_service.get_winners(raffle["_id"])

    page = await query_service.user_wins(winners[0]["participant"].upper())
    assert [w["_id"] for w in page["items"]] == [winners[0]["_id"]]
    assert page["next_cursor"] is None
