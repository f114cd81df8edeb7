"""
Test suite for internal and external transfers

Covers balance conservation, idempotency, the external limit and
compensation when a step fails half-way.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from funds_ledger.accounts import AccountStatus, TransactionStatus, TransactionType
from funds_ledger.api.auth import BankingSystem
from funds_ledger.audit import AuditEventType
from funds_ledger.compensation import SagaStatus
from funds_ledger.errors import (
    ConflictError, InsufficientFundsError, NotFoundError, PersistenceError, ValidationError
)
from funds_ledger.references import scoped_key
from funds_ledger.storage import InMemoryStorage


class FailingStorage(InMemoryStorage):
    """Raises when a ledger row whose id ends with `suffix` is inserted"""

    def __init__(self, suffix: str):
        super().__init__()
        self.suffix = suffix

    def insert(self, table, record_id, data):
        if table == "transactions" and record_id.endswith(self.suffix):
            raise RuntimeError("disk I/O error")
        return super().insert(table, record_id, data)


class TestInternalTransfer:
    """Transfers between two accounts at this bank"""

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.ledger = self.system.ledger
        self.processor = self.system.transfer_processor
        self.account_a = self.ledger.open_account("alice", "1000000001", Decimal("500.00"))
        self.account_b = self.ledger.open_account("bob", "1000000002", Decimal("200.00"))

    def balance(self, account):
        return self.ledger.get_account(account.id).balance

    def test_transfer_moves_funds(self):
        result = self.processor.internal_transfer("alice", self.account_a.id, "1000000002", "100.00")

        assert self.balance(self.account_a) == Decimal("400.00")
        assert self.balance(self.account_b) == Decimal("300.00")
        assert result.new_balance == Decimal("400.00")
        assert result.reference_number.startswith("INT-")

        legs = self.ledger.get_transactions_for_group(result.transfer_group_id)
        assert {leg.reference for leg in legs} == {
            f"{result.reference_number}-DR", f"{result.reference_number}-CR"
        }
        debit = next(leg for leg in legs if leg.transaction_type == TransactionType.DEBIT)
        assert debit.balance_before == Decimal("500.00")
        assert debit.balance_after == Decimal("400.00")

    def test_conservation_over_many_transfers(self):
        total = self.balance(self.account_a) + self.balance(self.account_b)
        for amount in ["10.00", "0.01", "99.99", "45.50"]:
            self.processor.internal_transfer("alice", self.account_a.id, "1000000002", amount)
            self.processor.internal_transfer("bob", self.account_b.id, "1000000001", "3.33")

        assert self.balance(self.account_a) + self.balance(self.account_b) == total
        assert self.system.audit_trail.verify_integrity()['valid']

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.processor.internal_transfer("alice", self.account_a.id, "1000000002", "600.00")

        assert exc_info.value.shortfall == Decimal("100.00")
        assert self.balance(self.account_a) == Decimal("500.00")
        assert self.balance(self.account_b) == Decimal("200.00")
        failures = self.system.audit_trail.get_events_by_type(AuditEventType.TRANSFER_FAILED)
        assert failures[-1].metadata['reason'] == "insufficient_funds"

    def test_caller_must_own_source(self):
        with pytest.raises(NotFoundError):
            self.processor.internal_transfer("bob", self.account_a.id, "1000000002", "10.00")

    def test_unknown_or_inactive_destination(self):
        with pytest.raises(NotFoundError):
            self.processor.internal_transfer("alice", self.account_a.id, "9999999999", "10.00")

        self.ledger.set_status(self.account_b.id, AccountStatus.INACTIVE)
        with pytest.raises(ValidationError, match="not active"):
            self.processor.internal_transfer("alice", self.account_a.id, "1000000002", "10.00")

    def test_same_account_rejected(self):
        with pytest.raises(ValidationError, match="same account"):
            self.processor.internal_transfer("alice", self.account_a.id, "1000000001", "10.00")

    @pytest.mark.parametrize("amount", ["0", "-1.00", "1.005", "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.processor.internal_transfer("alice", self.account_a.id, "1000000002", amount)
        assert self.balance(self.account_a) == Decimal("500.00")

    def test_idempotent_replay(self):
        first = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "400.00", idempotency_key="pay-rent"
        )
        second = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "400.00", idempotency_key="pay-rent"
        )

        assert second.reference_number == first.reference_number
        assert second.new_balance == Decimal("100.00")
        assert self.balance(self.account_a) == Decimal("100.00")
        assert self.balance(self.account_b) == Decimal("600.00")

    def test_key_can_be_retried_after_failure(self):
        with pytest.raises(InsufficientFundsError):
            self.processor.internal_transfer(
                "alice", self.account_a.id, "1000000002", "800.00", idempotency_key="retry-me"
            )
        self.ledger.adjust_balance(self.account_a.id, Decimal("500.00"))

        result = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "800.00", idempotency_key="retry-me"
        )
        assert result.new_balance == Decimal("200.00")

    def test_keys_are_scoped_per_user(self):
        first = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "400.00", idempotency_key="monthly"
        )
        # Same key from another user is a new request, not a replay of alice's
        second = self.processor.internal_transfer(
            "bob", self.account_b.id, "1000000001", "50.00", idempotency_key="monthly"
        )

        assert second.reference_number != first.reference_number
        assert second.new_balance == Decimal("550.00")
        assert self.balance(self.account_a) == Decimal("150.00")
        assert self.balance(self.account_b) == Decimal("550.00")

    def test_key_reused_with_different_parameters(self):
        self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "100.00", idempotency_key="once"
        )
        with pytest.raises(ConflictError, match="different parameters"):
            self.processor.internal_transfer(
                "alice", self.account_a.id, "1000000002", "150.00", idempotency_key="once"
            )

        assert self.balance(self.account_a) == Decimal("400.00")
        assert self.balance(self.account_b) == Decimal("300.00")

    def test_replay_ignores_amount_formatting(self):
        first = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "100", idempotency_key="fmt"
        )
        second = self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "100.00", idempotency_key="fmt"
        )
        assert second.reference_number == first.reference_number
        assert self.balance(self.account_a) == Decimal("400.00")

    def test_notifications_sent_to_both_parties(self):
        self.processor.internal_transfer("alice", self.account_a.id, "1000000002", "25.00")

        sent = self.system.notifications.get_notifications("alice")
        received = self.system.notifications.get_notifications("bob")
        assert sent[-1].title == "Transfer sent"
        assert received[-1].title == "Transfer received"
        assert "0002" in sent[-1].message


class TestTransferCompensation:
    """A failure after the first leg is applied must leave no trace in balances"""

    def setup_method(self):
        self.system = BankingSystem(FailingStorage(suffix="-CR"))
        self.ledger = self.system.ledger
        self.account_a = self.ledger.open_account("alice", "1000000001", Decimal("500.00"))
        self.account_b = self.ledger.open_account("bob", "1000000002", Decimal("200.00"))

    def test_second_leg_failure_reverses_first(self):
        with pytest.raises(PersistenceError) as exc_info:
            self.system.transfer_processor.internal_transfer(
                "alice", self.account_a.id, "1000000002", "100.00", idempotency_key="k1"
            )

        assert "disk I/O" not in exc_info.value.message
        assert self.ledger.get_account(self.account_a.id).balance == Decimal("500.00")
        assert self.ledger.get_account(self.account_b.id).balance == Decimal("200.00")

        debit_rows = self.ledger.get_account_transactions(self.account_a.id)
        assert len(debit_rows) == 1
        assert debit_rows[0].status == TransactionStatus.FAILED

        sagas = self.system.storage.load_all("transfer_sagas")
        assert len(sagas) == 1
        assert sagas[0]['status'] == SagaStatus.COMPENSATED.value
        assert self.system.registry.get("alice:k1")['status'] == "failed"
        assert self.system.audit_trail.get_events_by_type(AuditEventType.TRANSFER_COMPENSATED)


class TestExternalTransfer:
    """Transfers to other banks"""

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.ledger = self.system.ledger
        self.processor = self.system.transfer_processor
        self.account = self.ledger.open_account("alice", "1000000001", Decimal("20000.00"))

    def send(self, amount, **overrides):
        kwargs = dict(
            user_id="alice",
            from_account_id=self.account.id,
            beneficiary_name="Carol Smith",
            beneficiary_bank="First Example Bank",
            account_number="987654321",
            routing_number="021000021",
            amount=amount
        )
        kwargs.update(overrides)
        return self.processor.external_transfer(**kwargs)

    def test_external_transfer_debits_source(self):
        result = self.send("2500.00")

        assert result.reference_number.startswith("EXT-")
        assert result.new_balance == Decimal("17500.00")
        row = self.ledger.get_transaction(result.reference_number)
        assert row.transaction_type == TransactionType.EXTERNAL_TRANSFER
        assert "*****4321" in row.description

    def test_limit_enforced_before_debit(self):
        with pytest.raises(ValidationError, match="limit"):
            self.send("15000.00")
        assert self.ledger.get_account(self.account.id).balance == Decimal("20000.00")
        assert self.ledger.get_account_transactions(self.account.id) == []

    def test_limit_is_inclusive(self):
        result = self.send("10000.00")
        assert result.new_balance == Decimal("10000.00")

    def test_bad_routing_number(self):
        with pytest.raises(ValidationError, match="routing"):
            self.send("10.00", routing_number="123456789")

    def test_missing_beneficiary(self):
        with pytest.raises(ValidationError):
            self.send("10.00", beneficiary_name="  ")

    def test_idempotent_replay(self):
        first = self.send("100.00", idempotency_key="ext-1")
        second = self.send("100.00", idempotency_key="ext-1")
        assert first.reference_number == second.reference_number
        assert self.ledger.get_account(self.account.id).balance == Decimal("19900.00")

    def test_key_shared_with_other_operation(self):
        self.send("100.00", idempotency_key="shared")
        other = self.ledger.open_account("bob", "1000000002")
        with pytest.raises(ConflictError):
            self.processor.internal_transfer("alice", self.account.id, other.account_number,
                                             "1.00", idempotency_key="shared")

    def test_key_reused_for_other_beneficiary(self):
        self.send("100.00", idempotency_key="ext-2")
        with pytest.raises(ConflictError, match="different parameters"):
            self.send("100.00", idempotency_key="ext-2", account_number="123456789")
        assert self.ledger.get_account(self.account.id).balance == Decimal("19900.00")


class TestStaleKeyRecovery:
    """Idempotency keys left in flight by a crashed process are settled by recovery"""

    RECOVER_NOW = timedelta(seconds=-1)

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.ledger = self.system.ledger
        self.processor = self.system.transfer_processor
        self.registry = self.system.registry
        self.account_a = self.ledger.open_account("alice", "1000000001", Decimal("500.00"))
        self.account_b = self.ledger.open_account("bob", "1000000002", Decimal("200.00"))

    def transfer(self, key):
        return self.processor.internal_transfer(
            "alice", self.account_a.id, "1000000002", "100.00", idempotency_key=key
        )

    def balances(self):
        return (self.ledger.get_account(self.account_a.id).balance,
                self.ledger.get_account(self.account_b.id).balance)

    def test_key_reserved_without_saga(self):
        key = scoped_key("alice", "crash-early")
        self.registry.reserve(key, "internal_transfer")
        with pytest.raises(ConflictError, match="already in progress"):
            self.transfer("crash-early")

        assert self.processor.recover_incomplete_transfers(self.RECOVER_NOW) == []
        assert self.registry.get(key)['status'] == "failed"

        result = self.transfer("crash-early")
        assert result.new_balance == Decimal("400.00")
        assert self.balances() == (Decimal("400.00"), Decimal("300.00"))

    def test_interrupted_saga_is_compensated_and_key_released(self):
        key = scoped_key("alice", "crash-mid")
        self.registry.reserve(key, "internal_transfer")
        saga = self.system.compensation.begin("internal_transfer", "INT-CRASH", "alice", key)
        saga.balance_changed(self.ledger.adjust_balance(self.account_a.id, Decimal("-100.00")))

        # Live operations are left alone
        self.processor.recover_incomplete_transfers()
        assert self.registry.get(key)['status'] == "in_flight"

        assert self.processor.recover_incomplete_transfers(self.RECOVER_NOW) == [saga.id]
        assert self.registry.get(key)['status'] == "failed"
        assert self.balances() == (Decimal("500.00"), Decimal("200.00"))

        self.transfer("crash-mid")
        assert self.balances() == (Decimal("400.00"), Decimal("300.00"))

    def test_finished_saga_replays_after_recovery(self, monkeypatch):
        def lost_write(key, result):
            raise RuntimeError("process killed")

        monkeypatch.setattr(self.registry, "complete", lost_write)
        with pytest.raises(RuntimeError):
            self.transfer("crash-late")
        monkeypatch.undo()

        key = scoped_key("alice", "crash-late")
        assert self.registry.get(key)['status'] == "in_flight"
        assert self.processor.recover_incomplete_transfers(self.RECOVER_NOW) == []
        assert self.registry.get(key)['status'] == "completed"

        replay = self.transfer("crash-late")
        assert replay.new_balance == Decimal("400.00")
        assert self.balances() == (Decimal("400.00"), Decimal("300.00"))
