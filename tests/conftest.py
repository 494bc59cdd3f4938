from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from config import Settings
from database import Database
from services.errors import PermanentExternalError, TransientExternalError
from services.ledger_service import LedgerAdapter, PaymentStatus, PaymentVerification, TransferStatus
from services.payout_service import PayoutService
from services.query_service import QueryService
from services.raffle_service import RaffleService
from services.randomness_service import RandomnessAdapter, RandomnessRequest
from services.referral_service import ReferralService
from services.stake_service import StakeService
from services.withdrawal_service import WithdrawalService

START = datetime(2025, 1, 1, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime = START):
        self.current = now

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)

    def set(self, value: datetime):
        self.current = value


class FakeLedger(LedgerAdapter):
    def __init__(self):
        self.payments = {}
        self.transfers = []
        self.references = {}
        self.failing_destinations = set()
        # Transfers to these land, but the reply times out
        self.lost_responses = set()
        # Transfers to these never reach the ledger
        self.unreachable = set()
        self.transfer_statuses = {}
        self.on_verify = None
        self.on_send = None

    def confirm(self, tx_ref, amount, confirmed_at=None):
        self.payments[tx_ref] = PaymentVerification(PaymentStatus.CONFIRMED, amount, confirmed_at)

    async def verify_payment(self, tx_ref, expected_amount, expected_recipient):
        if self.on_verify:
            await self.on_verify(tx_ref)
        return self.payments.get(tx_ref, PaymentVerification(PaymentStatus.NOT_FOUND))

    async def send_transfer(self, destination, amount, asset, reference):
        if reference in self.references:
            return self.references[reference]
        if self.on_send:
            await self.on_send(reference)
        if destination in self.unreachable:
            raise TransientExternalError(f"Ledger unreachable for transfer to {destination}")
        if destination in self.failing_destinations:
            raise PermanentExternalError(f"Transfer to {destination} rejected")
        tx_ref = f"out-{len(self.transfers) + 1}"
        self.transfers.append({"destination": destination, "amount": amount, "asset": asset, "tx_ref": tx_ref})
        self.references[reference] = tx_ref
        if destination in self.lost_responses:
            raise TransientExternalError(f"Timed out waiting for transfer to {destination}")
        return tx_ref

    async def find_transfer(self, reference):
        return self.references.get(reference)

    async def get_transfer_status(self, tx_ref):
        return self.transfer_statuses.get(tx_ref, TransferStatus.COMPLETED)


class FakeRandomness(RandomnessAdapter):
    def __init__(self, inline_value="seed-value"):
        self.inline_value = inline_value
        self.requests = []
        self.values = {}

    async def request_randomness(self, scope_id):
        request_id = f"req-{len(self.requests) + 1}"
        self.requests.append((request_id, scope_id))
        return RandomnessRequest(request_id=request_id, random_value=self.inline_value)

    async def get_randomness(self, request_id):
        return self.values.get(request_id)


@pytest.fixture
def settings():
    return Settings(
        treasury_address="treasury",
        max_external_retries=1,
        cron_secret="cron-secret",
        randomness_callback_secret="callback-secret",
        secret_key="test-secret",
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db(settings):
    return Database(settings, client=AsyncMongoMockClient())


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def randomness():
    return FakeRandomness()


@pytest.fixture
def raffle_service(db, settings, ledger, randomness, clock):
    return RaffleService(db, settings, ledger, randomness, clock)


@pytest.fixture
def payout_service(db, settings, ledger, clock):
    return PayoutService(db, settings, ledger, clock)


@pytest.fixture
def query_service(db, settings, clock):
    return QueryService(db, settings, clock)


@pytest.fixture
def referral_service(db, settings, clock):
    return ReferralService(db, settings, clock)


@pytest.fixture
def stake_service(db, settings, ledger, referral_service, clock):
    return StakeService(db, settings, ledger, referral_service, clock)


@pytest.fixture
def withdrawal_service(db, settings, ledger, stake_service, referral_service, clock):
    return WithdrawalService(db, settings, ledger, stake_service, referral_service, clock)


@pytest.fixture
def make_raffle(raffle_service, clock):
    async def _make(**overrides):
        config = {
            "type": "daily",
            "title": "Daily draw",
            "entry_price": 10,
            "max_entries_per_user": 5,
            "winner_count": 1,
            "start_time": clock() - timedelta(minutes=1),
            "end_time": clock() + timedelta(days=2),
        }
        config.update(overrides)
        return await raffle_service.create_raffle(config)
    return _make


@pytest.fixture
def enter(raffle_service, ledger):
    counter = {"n": 0}

    async def _enter(raffle, participant, tickets, tx_ref=None):
        counter["n"] += 1
        tx_ref = tx_ref or f"tx-{participant}-{counter['n']}"
        ledger.confirm(tx_ref, tickets * raffle["entry_price"])
        return await raffle_service.submit_entry(raffle["_id"], participant, tickets, tx_ref)
    return _enter
