from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from main import create_app
from routes.auth import create_access_token


@pytest.fixture
def client(settings, db, ledger, randomness, clock):
    app = create_app(settings=settings, db=db, ledger=ledger, randomness=randomness, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings):
    def _headers(wallet, role="user"):
        token = create_access_token({"sub": wallet, "role": role}, settings)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def raffle_payload(clock, **overrides):
    payload = {
        "type": "daily",
        "title": "Daily draw",
        "entry_price": 10,
        "max_entries_per_user": 5,
        "winner_count": 1,
        "start_time": (clock() - timedelta(minutes=1)).isoformat(),
        "end_time": (clock() + timedelta(days=2)).isoformat(),
    }
    payload.update(overrides)
    return payload


def create_raffle(client, auth_headers, clock, **overrides):
    response = client.post("/api/v1/admin/raffles", json=raffle_payload(clock, **overrides),
                           headers=auth_headers("0xadmin", "admin"))
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_admin_routes_require_admin(client, auth_headers, clock):
    response = client.post("/api/v1/admin/raffles", json=raffle_payload(clock), headers=auth_headers("0xaaa"))
    assert response.status_code == 403

    response = client.post("/api/v1/admin/raffles", json=raffle_payload(clock))
    assert response.status_code in (401, 403)


def test_enter_and_read_raffle(client, auth_headers, clock, ledger):
    raffle = create_raffle(client, auth_headers, clock)
    ledger.confirm("tx-1", 30)

    response = client.post(f"/api/v1/raffles/{raffle['id']}/enter", json={"ticket_count": 3, "tx_ref": "tx-1"},
                           headers=auth_headers("0xAAA"))
    assert response.status_code == 201
    assert response.json()["participant"] == "0xaaa"

    fetched = client.get(f"/api/v1/raffles/{raffle['id']}").json()
    assert fetched["total_pool"] == 30
    assert fetched["total_entries"] == 3

    participants = client.get(f"/api/v1/raffles/{raffle['id']}/participants").json()
    assert participants[0]["participant"] == "0xaaa"
    assert participants[0]["ticket_count"] == 3

    stats = client.get(f"/api/v1/raffles/{raffle['id']}/stats").json()
    assert stats["payout_stats"] is None


def test_service_errors_are_mapped(client, auth_headers, clock, ledger):
    raffle = create_raffle(client, auth_headers, clock)
    ledger.confirm("tx-1", 10)
    url = f"/api/v1/raffles/{raffle['id']}/enter"

    client.post(url, json={"ticket_count": 1, "tx_ref": "tx-1"}, headers=auth_headers("0xaaa"))
    response = client.post(url, json={"ticket_count": 1, "tx_ref": "tx-1"}, headers=auth_headers("0xbbb"))
    assert response.status_code == 409
    assert response.json()["error"] == "DUPLICATE_TRANSACTION"

    response = client.get("/api/v1/raffles/unknown")
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"

    ledger.confirm("tx-2", 60)
    response = client.post(url, json={"ticket_count": 6, "tx_ref": "tx-2"}, headers=auth_headers("0xccc"))
    assert response.status_code == 400
    assert response.json()["error"] == "MAX_ENTRIES_EXCEEDED"


def test_draw_and_payout_flow(client, auth_headers, clock, ledger):
    raffle = create_raffle(client, auth_headers, clock)
    admin = auth_headers("0xadmin", "admin")
    ledger.confirm("tx-1", 20)
    client.post(f"/api/v1/raffles/{raffle['id']}/enter", json={"ticket_count": 2, "tx_ref": "tx-1"},
                headers=auth_headers("0xaaa"))

    response = client.post(f"/api/v1/admin/raffles/{raffle['id']}/draw", headers=admin)
    assert response.status_code == 409
    assert response.json()["error"] == "NOT_READY"

    clock.advance(days=2)
    drawn = client.post(f"/api/v1/admin/raffles/{raffle['id']}/draw", headers=admin).json()
    assert drawn["status"] == "completed"
    assert drawn["winners"][0]["participant"] == "0xaaa"
    assert drawn["winners"][0]["prize"] == 18

    summary = client.post("/api/v1/admin/payouts", json={"action": "process", "raffle_id": raffle["id"]},
                          headers=admin).json()
    assert summary["successful"] == 1

    payout_id = drawn["winners"][0]["id"]
    response = client.post("/api/v1/admin/payouts", json={"action": "retry", "payout_id": payout_id}, headers=admin)
    assert response.status_code == 409
    assert response.json()["error"] == "DUPLICATE"

    response = client.post("/api/v1/admin/payouts", json={"action": "explode"}, headers=admin)
    assert response.status_code == 422


def test_user_history_routes(client, auth_headers, clock, ledger):
    raffle = create_raffle(client, auth_headers, clock)
    ledger.confirm("tx-1", 20)
    client.post(f"/api/v1/raffles/{raffle['id']}/enter", json={"ticket_count": 2, "tx_ref": "tx-1"},
                headers=auth_headers("0xaaa"))

    assert client.get("/api/v1/users/me/entries").status_code in (401, 403)

    entries = client.get("/api/v1/users/me/entries", headers=auth_headers("0xaaa")).json()
    assert [e["tx_ref"] for e in entries["items"]] == ["tx-1"]
    assert entries["items"][0]["raffle_title"] == "Daily draw"
    assert entries["items"][0]["raffle_type"] == "daily"
    assert client.get("/api/v1/users/me/entries", headers=auth_headers("0xbbb")).json()["items"] == []

    assert client.get("/api/v1/users/me/wins", headers=auth_headers("0xaaa")).json()["items"] == []
    clock.advance(days=2)
    client.post(f"/api/v1/admin/raffles/{raffle['id']}/draw", headers=auth_headers("0xadmin", "admin"))

    wins = client.get("/api/v1/users/me/wins", headers=auth_headers("0xaaa")).json()
    assert [(w["raffle_id"], w["prize"], w["status"]) for w in wins["items"]] == [(raffle["id"], 18, "pending")]
    assert wins["has_more"] is False


def test_cron_requires_secret(client):
    assert client.post("/api/v1/cron/raffles/close").status_code == 401
    response = client.post("/api/v1/cron/run-all", headers={"X-Cron-Secret": "cron-secret"})
    assert response.status_code == 200
    assert response.json()["closed"]["processed"] == 0
    assert response.json()["refunds"]["raffles"] == 0
    assert response.json()["payouts"]["total"] == 0


def test_randomness_callback(client, auth_headers, clock, ledger, randomness):
    randomness.inline_value = None
    raffle = create_raffle(client, auth_headers, clock)
    ledger.confirm("tx-1", 10)
    client.post(f"/api/v1/raffles/{raffle['id']}/enter", json={"ticket_count": 1, "tx_ref": "tx-1"},
                headers=auth_headers("0xaaa"))
    clock.advance(days=2)

    pending = client.post(f"/api/v1/admin/raffles/{raffle['id']}/draw", headers=auth_headers("0xadmin", "admin")).json()
    body = {"request_id": pending["request_id"], "random_value": "oracle"}

    assert client.post("/api/v1/raffles/randomness/callback", json=body).status_code == 401
    response = client.post("/api/v1/raffles/randomness/callback", json=body,
                           headers={"X-Callback-Secret": "callback-secret"})
    assert response.json() == {"raffle_id": raffle["id"], "status": "completed", "winners": 1}


def test_stake_and_withdrawal_routes(client, auth_headers, ledger, clock):
    headers = auth_headers("0xaaa")
    stake = client.post("/api/v1/stakes", json={"amount": 1000}, headers=headers).json()
    ledger.confirm("stake-tx", 1000)

    active = client.post(f"/api/v1/stakes/{stake['id']}/transaction", json={"tx_ref": "stake-tx"},
                         headers=headers).json()
    assert active["status"] == "active"

    other = client.get(f"/api/v1/stakes/{stake['id']}", headers=auth_headers("0xbbb"))
    assert other.status_code == 403

    available = client.get("/api/v1/withdrawals/available", headers=headers).json()
    assert available["available"] == 0.0

    response = client.post("/api/v1/withdrawals", json={"amount": 50, "destination": "0xdest"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "INSUFFICIENT_BALANCE"

    me = client.get("/api/v1/auth/me", headers=headers).json()
    assert me["id"] == "0xaaa"
    assert len(me["referral_code"]) == 8
