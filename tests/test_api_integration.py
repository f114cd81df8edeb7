"""
Integration tests for the Funds Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient

from funds_ledger.api import create_app
from funds_ledger.api.auth import BankingSystem
from funds_ledger.config import get_config
from funds_ledger.notifications import ChannelProvider, NotificationType
from funds_ledger.storage import InMemoryStorage


def make_token(user_id: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    config = get_config()
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def auth(user_id: str = "alice") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


SYSTEM_HEADERS = {"X-System-Token": get_config().system_token}


class CodeCapture(ChannelProvider):
    """Stands in for the SMS gateway that would deliver wire codes"""

    def __init__(self):
        self.codes = []

    def send(self, notification) -> bool:
        if notification.notification_type == NotificationType.WIRE_VERIFICATION_CODE:
            self.codes.append(re.search(r"is (\d{6})\.", notification.message).group(1))
        return True


@pytest.fixture
def system():
    return BankingSystem(InMemoryStorage())


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


class TestHealthAndAuth:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "service": "funds_ledger_api", "version": "1.0.0"}

    def test_request_id_is_echoed(self, client):
        r = client.get("/health", headers={"X-Request-ID": "req-7"})
        assert r.headers["X-Request-ID"] == "req-7"
        assert client.get("/health").headers["X-Request-ID"]

    def test_missing_token(self, client):
        r = client.post("/transfers/internal", json={
            "from_account_id": "a", "to_account_number": "1", "amount": "1.00"
        })
        assert r.status_code == 401
        assert r.json()["error"]["kind"] == "auth_error"

    def test_bad_and_expired_tokens(self, client):
        r = client.get("/loans/x/amortization", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401
        assert r.json()["error"]["message"] == "Invalid token"

        expired = make_token("alice", timedelta(minutes=-5))
        r = client.get("/loans/x/amortization", headers={"Authorization": f"Bearer {expired}"})
        assert r.status_code == 401
        assert r.json()["error"]["message"] == "Token expired"


class TestTransferFlow:
    """End-to-end transfer tests"""

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.client = TestClient(create_app(self.system))
        self.a = self.system.ledger.open_account("alice", "1000000001", Decimal("500.00"))
        self.b = self.system.ledger.open_account("bob", "2000000001", Decimal("200.00"))

    def test_internal_transfer(self):
        r = self.client.post("/transfers/internal", headers=auth(), json={
            "from_account_id": self.a.id,
            "to_account_number": "2000000001",
            "amount": "100.00",
            "memo": "Rent share"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["new_balance"] == "400.00"
        assert data["reference_number"].startswith("INT-")
        assert self.system.ledger.get_account(self.b.id).balance == Decimal("300.00")

    def test_insufficient_funds(self):
        r = self.client.post("/transfers/internal", headers=auth(), json={
            "from_account_id": self.a.id, "to_account_number": "2000000001", "amount": "600.00"
        })
        assert r.status_code == 400
        assert r.json()["error"]["kind"] == "insufficient_funds"
        assert self.system.ledger.get_account(self.a.id).balance == Decimal("500.00")

    def test_cannot_spend_from_someone_elses_account(self):
        r = self.client.post("/transfers/internal", headers=auth("bob"), json={
            "from_account_id": self.a.id, "to_account_number": "2000000001", "amount": "10.00"
        })
        assert r.status_code == 404

    def test_external_transfer_limit(self):
        self.system.ledger.adjust_balance(self.a.id, Decimal("20000.00"))
        r = self.client.post("/transfers/external", headers=auth(), json={
            "from_account_id": self.a.id,
            "beneficiary_name": "Carol",
            "beneficiary_bank": "Other Bank",
            "account_number": "987654321",
            "routing_number": "021000021",
            "amount": "15000.00"
        })
        assert r.status_code == 400
        assert r.json()["error"]["kind"] == "validation_error"
        assert self.system.ledger.get_account(self.a.id).balance == Decimal("20500.00")


class TestWireFlow:

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.capture = CodeCapture()
        self.system.notifications.register_provider(self.capture)
        self.client = TestClient(create_app(self.system))
        self.account = self.system.ledger.open_account("alice", "1000000001", Decimal("5000.00"))

    def initiate(self):
        r = self.client.post("/transfers/wire/initiate", headers=auth(), json={
            "from_account_id": self.account.id,
            "beneficiary_name": "Carol",
            "beneficiary_bank": "Other Bank",
            "routing_number": "021000021",
            "account_number": "987654321",
            "amount": "1000.00"
        })
        assert r.status_code == 200
        return r.json()

    def test_initiate_does_not_return_code(self):
        data = self.initiate()
        assert data["status"] == "pending_verification"
        assert self.capture.codes[0] not in [str(v) for v in data.values()]
        assert self.system.ledger.get_account(self.account.id).balance == Decimal("5000.00")

    def test_complete_and_settle(self):
        data = self.initiate()
        r = self.client.post("/transfers/wire/complete", headers=auth(), json={
            "transfer_id": data["transfer_id"], "verification_code": self.capture.codes[0]
        })
        assert r.status_code == 200
        assert r.json()["status"] == "processing"
        assert self.system.ledger.get_account(self.account.id).balance == Decimal("4000.00")

        r = self.client.post(f"/transfers/wire/{data['transfer_id']}/settle", json={"succeeded": True})
        assert r.status_code == 401

        r = self.client.post(f"/transfers/wire/{data['transfer_id']}/settle", headers=SYSTEM_HEADERS,
                             json={"succeeded": True})
        assert r.status_code == 200
        assert r.json()["status"] == "settled"

    def test_wrong_code(self):
        data = self.initiate()
        wrong = "000000" if self.capture.codes[0] != "000000" else "111111"
        r = self.client.post("/transfers/wire/complete", headers=auth(), json={
            "transfer_id": data["transfer_id"], "verification_code": wrong
        })
        assert r.status_code == 400
        assert self.system.ledger.get_account(self.account.id).balance == Decimal("5000.00")


class TestLoanFlow:
    """End-to-end loan servicing tests"""

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.client = TestClient(create_app(self.system))
        self.account = self.system.ledger.open_account("alice", "1000000001", Decimal("20000.00"))
        self.loan = self.system.loan_store.create_loan(
            "alice", self.account.id, Decimal("12000.00"), Decimal("0"), 12, date(2026, 1, 15)
        )

    def test_amortization(self):
        r = self.client.get(f"/loans/{self.loan.id}/amortization", headers=auth())
        assert r.status_code == 200
        data = r.json()
        assert data["loan_id"] == self.loan.id
        assert data["monthly_payment"] == "1000.00"
        assert len(data["schedule"]) == 12

        r = self.client.get(f"/loans/{self.loan.id}/amortization", headers=auth("bob"))
        assert r.status_code == 404

    def test_payment(self):
        r = self.client.post(f"/loans/{self.loan.id}/payments", headers=auth(), json={"amount": "1000.00"})
        assert r.status_code == 200
        data = r.json()
        assert data["principal_paid"] == "1000.00"
        assert data["remaining_balance"] == "11000.00"
        assert data["new_account_balance"] == "19000.00"

        r = self.client.post(f"/loans/{self.loan.id}/payments", headers=auth(), json={"amount": "50000.00"})
        assert r.status_code == 400

    def test_early_payoff_quote_then_execute(self):
        r = self.client.get(f"/loans/{self.loan.id}/early-payoff", headers=auth())
        assert r.status_code == 200
        assert r.json()["payoff_amount"] == "11760.00"

        r = self.client.post(f"/loans/{self.loan.id}/early-payoff", headers=auth(), json={})
        assert r.json()["payoff_amount"] == "11760.00"
        assert self.system.ledger.get_account(self.account.id).balance == Decimal("20000.00")

        r = self.client.post(f"/loans/{self.loan.id}/early-payoff", headers=auth(), json={"execute": True})
        assert r.status_code == 200
        assert r.json()["loan_status"] == "completed"
        assert r.json()["new_balance"] == "8240.00"

        r = self.client.post(f"/loans/{self.loan.id}/early-payoff", headers=auth(), json={"execute": True})
        assert r.status_code == 400
        assert r.json()["error"]["kind"] == "conflict"

    def test_auto_payment_toggle(self):
        r = self.client.post(f"/loans/{self.loan.id}/auto-payment", headers=auth(), json={"enabled": True})
        assert r.status_code == 400

        r = self.client.post(f"/loans/{self.loan.id}/auto-payment", headers=auth(), json={
            "enabled": True, "account_id": self.account.id, "payment_day": 15
        })
        assert r.status_code == 200
        assert r.json() == {
            "loan_id": self.loan.id,
            "auto_payment_enabled": True,
            "account_id": self.account.id,
            "payment_day": 15
        }

        r = self.client.post(f"/loans/{self.loan.id}/auto-payment", headers=auth(), json={"enabled": False})
        assert r.json()["auto_payment_enabled"] is False

    def test_batch_jobs_require_system_token(self):
        r = self.client.post("/loans/late-fee-assessment", json={"as_of": "2026-02-20"})
        assert r.status_code == 401

        r = self.client.post("/loans/late-fee-assessment", headers=SYSTEM_HEADERS, json={"as_of": "2026-02-20"})
        assert r.status_code == 200
        data = r.json()
        assert data["processed_count"] == 1
        assert data["details"][0]["fee_amount"] == "50.00"

    def test_auto_payment_run(self):
        self.system.auto_payment_manager.enable("alice", self.loan.id, self.account.id, payment_day=15)
        r = self.client.post("/loans/auto-payments/run", headers=SYSTEM_HEADERS, json={"as_of": "2026-02-15"})
        assert r.status_code == 200
        assert r.json()["processed_count"] == 1
        assert self.system.ledger.get_account(self.account.id).balance == Decimal("19000.00")
