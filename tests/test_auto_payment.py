"""
Test suite for auto-payment enrollment and the scheduled run
"""

from datetime import date
from decimal import Decimal

import pytest

from funds_ledger.accounts import AccountStatus
from funds_ledger.api.auth import BankingSystem
from funds_ledger.audit import AuditEventType
from funds_ledger.errors import ConflictError, NotFoundError, ValidationError
from funds_ledger.loans import LoanStatus, PaymentType
from funds_ledger.notifications import NotificationType
from funds_ledger.storage import InMemoryStorage


class TestAutoPaymentToggle:

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.ledger = self.system.ledger
        self.loans = self.system.loan_store
        self.manager = self.system.auto_payment_manager
        self.checking = self.ledger.open_account("alice", "1000000001", Decimal("5000.00"))
        self.savings = self.ledger.open_account("alice", "1000000002", Decimal("5000.00"), "savings")
        self.loan = self.loans.create_loan("alice", self.checking.id, Decimal("12000.00"), Decimal("0"),
                                           12, date(2026, 1, 15))

    def test_enable_and_disable(self):
        loan = self.manager.enable("alice", self.loan.id, self.savings.id, payment_day=15)
        assert loan.auto_payment_enabled
        assert loan.auto_payment_account_id == self.savings.id
        assert loan.auto_payment_day == 15
        assert self.loans.get_loan(self.loan.id).auto_payment_enabled

        loan = self.manager.disable("alice", self.loan.id)
        stored = self.loans.get_loan(self.loan.id)
        assert not stored.auto_payment_enabled
        assert stored.auto_payment_account_id is None
        assert stored.auto_payment_day is None

        types = [e.event_type for e in self.system.audit_trail.get_events_for_entity("loan", self.loan.id)]
        assert types == [AuditEventType.AUTO_PAYMENT_ENABLED, AuditEventType.AUTO_PAYMENT_DISABLED]
        titles = [n.notification_type for n in self.system.notifications.get_notifications("alice")]
        assert titles == [NotificationType.AUTO_PAYMENT_ENABLED, NotificationType.AUTO_PAYMENT_DISABLED]

    @pytest.mark.parametrize("day", [0, 29, 31])
    def test_payment_day_range(self, day):
        with pytest.raises(ValidationError):
            self.manager.enable("alice", self.loan.id, self.checking.id, payment_day=day)

    def test_account_must_belong_to_borrower(self):
        other = self.ledger.open_account("bob", "2000000001")
        with pytest.raises(NotFoundError):
            self.manager.enable("alice", self.loan.id, other.id)

    def test_account_must_be_active(self):
        self.ledger.set_status(self.savings.id, AccountStatus.INACTIVE)
        with pytest.raises(ValidationError):
            self.manager.enable("alice", self.loan.id, self.savings.id)

    def test_loan_must_be_active(self):
        self.loans.update_loan(self.loan, status=LoanStatus.COMPLETED)
        with pytest.raises(ConflictError):
            self.manager.enable("alice", self.loan.id, self.checking.id)


class TestAutoPaymentRun:

    def setup_method(self):
        self.system = BankingSystem(InMemoryStorage())
        self.ledger = self.system.ledger
        self.loans = self.system.loan_store
        self.manager = self.system.auto_payment_manager
        self.account = self.ledger.open_account("alice", "1000000001", Decimal("5000.00"))
        self.loan = self.loans.create_loan("alice", self.account.id, Decimal("12000.00"), Decimal("0"),
                                           12, date(2026, 1, 15))
        self.manager.enable("alice", self.loan.id, self.account.id, payment_day=15)

    def test_due_loan_is_paid(self):
        result = self.manager.run_auto_payments(as_of=date(2026, 2, 15))

        assert len(result.processed) == 1
        assert result.processed[0]['amount'] == "1000.00"
        assert self.ledger.get_account(self.account.id).balance == Decimal("4000.00")
        loan = self.loans.get_loan(self.loan.id)
        assert loan.payments_made == 1
        assert loan.next_payment_date == date(2026, 3, 15)
        assert self.loans.get_completed_payments(loan.id)[0].payment_type == PaymentType.AUTO

    def test_wrong_day_or_not_yet_due(self):
        assert self.manager.run_auto_payments(as_of=date(2026, 2, 14)).processed == []
        # Payment day matches but the installment is not due until February
        assert self.manager.run_auto_payments(as_of=date(2026, 1, 15)).processed == []

    def test_rerun_same_day_does_not_double_charge(self):
        self.manager.run_auto_payments(as_of=date(2026, 2, 15))
        second = self.manager.run_auto_payments(as_of=date(2026, 2, 15))
        assert second.processed == []
        assert self.ledger.get_account(self.account.id).balance == Decimal("4000.00")

    def test_outstanding_late_fee_collected_with_installment(self):
        self.system.late_fee_assessor.run(as_of=date(2026, 2, 16))
        result = self.manager.run_auto_payments(as_of=date(2026, 3, 15))

        assert result.processed[0]['amount'] == "1050.00"
        loan = self.loans.get_loan(self.loan.id)
        assert loan.late_fee_amount == Decimal("0.00")
        assert loan.payments_made == 1

    def test_failure_is_reported_and_notified(self):
        self.ledger.adjust_balance(self.account.id, Decimal("-4500.00"))
        result = self.manager.run_auto_payments(as_of=date(2026, 2, 15))

        assert result.processed == []
        assert result.failed[0]['loan_id'] == self.loan.id
        assert result.failed[0]['error'] == "Insufficient funds"
        notes = self.system.notifications.get_notifications("alice")
        assert notes[-1].notification_type == NotificationType.AUTO_PAYMENT_FAILED
