"""
Integration tests for the Token Ledger API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
import jwt
from datetime import datetime, timezone, timedelta
from fastapi.testclient import TestClient

from token_ledger.api import create_app
from token_ledger.config import TokenLedgerConfig
from token_ledger.runtime import LedgerRuntime
from token_ledger.storage import InMemoryStorage


SECRET = "test-secret-key-for-token-ledger-api"


def as_caller(caller):
    return {"X-Caller-Id": caller}


@pytest.fixture
def runtime():
    return LedgerRuntime.deploy(InMemoryStorage(), "issuer", 1000)


@pytest.fixture
def client(runtime):
    """Client with header-based caller identity"""
    config = TokenLedgerConfig(auth_enabled=False, log_level="WARNING")
    return TestClient(create_app(runtime=runtime, config=config))


@pytest.fixture
def auth_client(runtime):
    """Client that requires a signed JWT"""
    config = TokenLedgerConfig(auth_enabled=True, jwt_secret=SECRET, log_level="WARNING")
    return TestClient(create_app(runtime=runtime, config=config))


def bearer(caller, secret=SECRET, expires_in=timedelta(hours=1)):
    token = jwt.encode(
        {"sub": caller, "exp": datetime.now(timezone.utc) + expires_in},
        secret,
        algorithm="HS256"
    )
    return {"Authorization": f"Bearer {token}"}


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestQueries:
    """Test read endpoints"""

    def test_supply_and_authority(self, client):
        assert client.get("/supply").json() == {"total_supply": 1000}
        assert client.get("/authority").json() == {"authority": "issuer"}

    def test_balance(self, client):
        assert client.get("/balances/issuer").json()["balance"] == 1000
        assert client.get("/balances/nobody").json()["balance"] == 0

    def test_allowance(self, client):
        r = client.get("/allowances/issuer/bob")
        assert r.json() == {"owner": "issuer", "spender": "bob", "allowance": 0}


class TestLedgerFlow:
    """End-to-end ledger flow over HTTP"""

    def test_transfer(self, client):
        r = client.post("/transfer", json={"recipient": "bob", "amount": 250}, headers=as_caller("issuer"))

        assert r.status_code == 200
        body = r.json()
        assert body["success"]
        assert body["notifications"] == [{
            "event_type": "token.transfer", "sender": "issuer", "recipient": "bob", "amount": "250"
        }]
        assert client.get("/balances/bob").json()["balance"] == 250

    def test_insufficient_balance(self, client):
        r = client.post("/transfer", json={"recipient": "bob", "amount": 10000}, headers=as_caller("issuer"))

        assert r.status_code == 409
        assert r.json()["detail"] == {"error": "insufficient_balance"}
        assert client.get("/balances/issuer").json()["balance"] == 1000

    def test_delegated_transfer(self, client):
        r = client.post("/approve", json={"spender": "bob", "amount": 100}, headers=as_caller("issuer"))
        assert r.status_code == 200

        r = client.post(
            "/transfer-from",
            json={"sender": "issuer", "recipient": "carol", "amount": 60},
            headers=as_caller("bob")
        )
        assert r.status_code == 200
        assert client.get("/allowances/issuer/bob").json()["allowance"] == 40

        r = client.post(
            "/transfer-from",
            json={"sender": "issuer", "recipient": "carol", "amount": 60},
            headers=as_caller("bob")
        )
        assert r.status_code == 409
        assert r.json()["detail"] == {"error": "insufficient_allowance"}
        assert client.get("/balances/carol").json()["balance"] == 60

    def test_mint_and_burn(self, client):
        assert client.post("/mint", json={"amount": 500}, headers=as_caller("issuer")).status_code == 200
        assert client.get("/supply").json()["total_supply"] == 1500

        r = client.post("/mint", json={"amount": 1}, headers=as_caller("bob"))
        assert r.status_code == 403
        assert r.json()["detail"] == {"error": "unauthorized"}

        assert client.post("/burn", json={"amount": 100}, headers=as_caller("issuer")).status_code == 200
        assert client.get("/supply").json()["total_supply"] == 1400

    def test_transfer_authority(self, client):
        r = client.post("/authority", json={"new_authority": "bob"}, headers=as_caller("issuer"))
        assert r.status_code == 200
        assert client.get("/authority").json()["authority"] == "bob"

        r = client.post("/mint", json={"amount": 1}, headers=as_caller("issuer"))
        assert r.status_code == 403

    def test_negative_amount_rejected(self, client):
        r = client.post("/transfer", json={"recipient": "bob", "amount": -1}, headers=as_caller("issuer"))
        assert r.status_code == 422

    @pytest.mark.parametrize("amount", [True, 2.0, "3", None])
    def test_non_integer_amount_rejected(self, client, amount):
        for path, body in (("/transfer", {"recipient": "bob"}), ("/approve", {"spender": "bob"}),
                           ("/transfer-from", {"sender": "issuer", "recipient": "bob"}),
                           ("/mint", {}), ("/burn", {})):
            r = client.post(path, json=dict(body, amount=amount), headers=as_caller("issuer"))
            assert r.status_code == 422, path

        assert client.get("/balances/bob").json()["balance"] == 0
        assert client.get("/supply").json()["total_supply"] == 1000

    def test_missing_caller(self, client):
        r = client.post("/transfer", json={"recipient": "bob", "amount": 1})
        assert r.status_code == 401

    def test_notifications(self, client):
        client.post("/transfer", json={"recipient": "bob", "amount": 5}, headers=as_caller("issuer"))
        client.post("/approve", json={"spender": "bob", "amount": 3}, headers=as_caller("issuer"))

        everything = client.get("/notifications").json()["notifications"]
        assert len(everything) == 3

        approvals = client.get("/notifications", params={"event_type": "approval"}).json()["notifications"]
        assert approvals == [{"event_type": "token.approval", "owner": "issuer", "spender": "bob", "amount": "3"}]

        to_bob = client.get("/notifications", params={"recipient": "bob"}).json()["notifications"]
        assert [n["amount"] for n in to_bob] == ["5"]

    def test_notifications_without_sender(self, client):
        client.post("/transfer", json={"recipient": "bob", "amount": 5}, headers=as_caller("issuer"))

        minted = client.get("/notifications", params={"sender": ""}).json()["notifications"]

        assert len(minted) == 1
        assert minted[0]["sender"] is None
        assert minted[0]["recipient"] == "issuer"
        assert minted[0]["amount"] == "1000"

    def test_unknown_notification_type(self, client):
        r = client.get("/notifications", params={"event_type": "mint"})
        assert r.status_code == 400


class TestAuthentication:
    """Test JWT-derived caller identity"""

    def test_valid_token(self, auth_client):
        r = auth_client.post("/transfer", json={"recipient": "bob", "amount": 1}, headers=bearer("issuer"))
        assert r.status_code == 200

    def test_token_subject_is_the_caller(self, auth_client):
        r = auth_client.post("/transfer", json={"recipient": "issuer", "amount": 1}, headers=bearer("bob"))
        assert r.status_code == 409

    def test_missing_token(self, auth_client):
        r = auth_client.post("/transfer", json={"recipient": "bob", "amount": 1}, headers=as_caller("issuer"))
        assert r.status_code == 401

    def test_wrong_secret(self, auth_client):
        r = auth_client.post(
            "/transfer", json={"recipient": "bob", "amount": 1}, headers=bearer("issuer", secret="a-different-secret-key-for-the-api")
        )
        assert r.status_code == 401
        assert r.json()["detail"] == "Invalid token"

    def test_expired_token(self, auth_client):
        r = auth_client.post(
            "/transfer", json={"recipient": "bob", "amount": 1},
            headers=bearer("issuer", expires_in=timedelta(hours=-1))
        )
        assert r.status_code == 401
        assert r.json()["detail"] == "Token expired"

    def test_queries_need_no_token(self, auth_client):
        assert auth_client.get("/balances/issuer").status_code == 200
