"""Tests for the facilitator HTTP service."""

import pytest
from fastapi.testclient import TestClient

from purser import __version__
from purser.server import create_app

from test_facilitator import NETWORK, make_env


@pytest.fixture
def env(ledger):
    return make_env(ledger)


@pytest.fixture
def client(env):
    return TestClient(create_app(env.facilitator))


def body(payment):
    payload, req = payment
    return {"paymentPayload": payload, "paymentRequirements": req}


class TestHealth:
    def test_reports_status(self, client, env):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["network"] == NETWORK
        assert data["replayGuardSize"] == 0
        assert data["gasStatus"]["isHealthy"] is True
        assert data["gasStatus"]["balanceLamports"] == 1_000_000_000
        assert data["uptime"] >= 0

    def test_rpc_failure_reported_healthy(self, client, env, rpc_down):
        env.ledger.balance_error = rpc_down
        data = client.get("/health").json()
        assert data["gasStatus"] == {"isHealthy": True, "error": "RPC unavailable"}


def test_supported(client, env):
    kinds = client.get("/supported").json()["kinds"]
    assert kinds[0]["extra"]["feePayer"] == env.fee_payer.address


class TestVerifyRoute:
    def test_valid(self, client, env):
        response = client.post("/verify", json=body(env.pay()))
        assert response.status_code == 200
        assert response.json() == {"isValid": True, "invalidReason": None, "payer": env.agent.address}

    def test_invalid_payment_is_400(self, client, env):
        response = client.post("/verify", json=body(env.pay(paid=1, amount=1_000_000)))
        assert response.status_code == 400
        assert response.json()["isValid"] is False

    def test_body_validation_error(self, client):
        response = client.post("/verify", json={"paymentPayload": {"payload": {}}, "paymentRequirements": {}})
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "VALIDATION_ERROR"
        paths = {issue["path"] for issue in data["issues"]}
        assert "paymentPayload.payload.transaction" in paths
        assert "paymentRequirements.payTo" in paths

    def test_non_numeric_amount_rejected(self, client, env):
        payload, req = env.pay()
        req["amount"] = "1.5"
        response = client.post("/verify", json={"paymentPayload": payload, "paymentRequirements": req})
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestSettleRoute:
    def test_settles(self, client, env):
        response = client.post("/settle", json=body(env.pay()))
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["transaction"]
        assert data["network"] == NETWORK
        assert client.get("/health").json()["replayGuardSize"] == 1

    def test_replay_is_400(self, client, env):
        payment = body(env.pay())
        assert client.post("/settle", json=payment).status_code == 200
        response = client.post("/settle", json=payment)
        assert response.status_code == 400
        assert response.json()["errorReason"].startswith("Duplicate transaction")
