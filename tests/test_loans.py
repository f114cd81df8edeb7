"""
Test suite for the loan store

Loan booking, conditional updates and payment rows.
"""

from datetime import date
from decimal import Decimal

import pytest

from funds_ledger.errors import NotFoundError, PersistenceError
from funds_ledger.loans import LoanStatus, LoanStore, PaymentStatus, PaymentType, add_months
from funds_ledger.storage import InMemoryStorage


class TestAddMonths:

    @pytest.mark.parametrize("start, months, expected", [
        (date(2026, 1, 15), 1, date(2026, 2, 15)),
        (date(2026, 1, 31), 1, date(2026, 2, 28)),
        (date(2028, 1, 31), 1, date(2028, 2, 29)),
        (date(2026, 11, 30), 3, date(2027, 2, 28)),
        (date(2026, 12, 1), 12, date(2027, 12, 1)),
    ])
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected


class TestLoanStore:

    def setup_method(self):
        self.store = LoanStore(InMemoryStorage())
        self.loan = self.store.create_loan(
            "alice", "acct-1", Decimal("12000.00"), Decimal("0"), 12, date(2026, 1, 15)
        )

    def test_create_loan(self):
        loan = self.store.get_loan(self.loan.id)
        assert loan.remaining_balance == Decimal("12000.00")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.next_payment_date == date(2026, 2, 15)
        assert loan.payments_made == 0
        assert not loan.is_late

    @pytest.mark.parametrize("principal, rate, term", [
        (Decimal("0"), Decimal("5"), 12),
        (Decimal("100"), Decimal("-1"), 12),
        (Decimal("100"), Decimal("5"), 0),
    ])
    def test_create_loan_rejects_bad_terms(self, principal, rate, term):
        with pytest.raises(ValueError):
            self.store.create_loan("alice", "acct-1", principal, rate, term, date(2026, 1, 15))

    def test_ownership(self):
        assert self.store.get_owned_loan(self.loan.id, "alice").id == self.loan.id
        with pytest.raises(NotFoundError):
            self.store.get_owned_loan(self.loan.id, "bob")

    def test_conditional_update(self):
        stale = self.store.get_loan(self.loan.id)
        also_stale = self.store.get_loan(self.loan.id)
        fresh = self.store.get_loan(self.loan.id)

        updated, previous = self.store.update_loan(fresh, is_late=True)
        assert updated.version == 1
        assert previous == {'is_late': False}

        assert self.store.try_update_loan(stale, is_late=True) is None
        with pytest.raises(PersistenceError):
            self.store.update_loan(also_stale, payments_made=1)
        assert self.store.get_loan(self.loan.id).payments_made == 0

    def test_payment_rows(self):
        fee = self.store.add_payment(self.store.new_payment(
            self.loan,
            amount=Decimal("50.00"),
            principal_amount=Decimal("0"),
            interest_amount=Decimal("0"),
            late_fee=Decimal("50.00"),
            payment_type=PaymentType.LATE_FEE,
            status=PaymentStatus.PENDING,
            payment_date=date(2026, 2, 20),
            balance_after=Decimal("12050.00"),
            reference_number="LTF-1",
            installments_covered=0
        ))

        assert [p.id for p in self.store.get_pending_fees(self.loan.id)] == [fee.id]
        assert self.store.get_completed_payments(self.loan.id) == []

        previous = self.store.set_payment_status(fee, PaymentStatus.COMPLETED)
        assert previous == {'status': 'pending'}
        assert self.store.get_pending_fees(self.loan.id) == []
        assert len(self.store.get_completed_payments(self.loan.id)) == 1

    def test_get_loans_by_status(self):
        other = self.store.create_loan("bob", "acct-2", Decimal("500.00"), Decimal("3"), 6, date(2026, 1, 1))
        self.store.update_loan(other, status=LoanStatus.COMPLETED)

        assert [loan.id for loan in self.store.get_loans(LoanStatus.ACTIVE)] == [self.loan.id]
        assert len(self.store.get_loans()) == 2
