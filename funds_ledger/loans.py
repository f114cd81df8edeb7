"""
Loan Store

Loan and LoanPayment records. Loans are updated only through versioned
conditional writes; payment rows are append-only apart from the
pending/completed/failed status.
"""

import calendar
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError, PersistenceError
from .money import ZERO
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"   # Terminal
    REJECTED = "rejected"


class PaymentType(Enum):
    MANUAL = "manual"
    AUTO = "auto"
    LATE_FEE = "late_fee"
    EARLY_PAYOFF = "early_payoff"


class PaymentStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class Loan(StorageRecord):
    """
    A borrower's loan.

    remaining_balance only goes down, except when the late-fee assessor adds
    a fee. interest_rate is the annual rate in percent (6 means 6%).
    """
    user_id: str
    account_id: str                     # Account the borrower repays from by default
    loan_type: str
    principal: Decimal
    interest_rate: Decimal
    term_months: int
    remaining_balance: Decimal
    start_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    payments_made: int = 0
    is_late: bool = False
    late_fee_amount: Decimal = ZERO     # Assessed fees not yet paid
    monthly_payment_amount: Optional[Decimal] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    auto_payment_enabled: bool = False
    auto_payment_account_id: Optional[str] = None
    auto_payment_day: Optional[int] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE


@dataclass
class LoanPayment(StorageRecord):
    """One payment (or assessed fee) against a loan"""
    loan_id: str
    user_id: str
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    late_fee: Decimal
    payment_type: PaymentType
    status: PaymentStatus
    payment_date: date
    balance_after: Decimal
    reference_number: str
    schedule_number: Optional[int] = None        # First amortization row this payment settles
    installments_covered: Optional[int] = None   # None on rows recorded before schedule linkage
    account_id: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class LoanStore:
    """Loans and their payment rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.payments_table = "loan_payments"

    def create_loan(
        self,
        user_id: str,
        account_id: str,
        principal: Decimal,
        interest_rate: Decimal,
        term_months: int,
        start_date: date,
        loan_type: str = "personal",
        monthly_payment_amount: Optional[Decimal] = None,
        status: LoanStatus = LoanStatus.ACTIVE
    ) -> Loan:
        """Book an approved loan (origination collaborator entry point)"""
        if principal <= 0:
            raise ValueError("Principal must be positive")
        if interest_rate < 0:
            raise ValueError("Interest rate cannot be negative")
        if term_months <= 0:
            raise ValueError("Term must be at least one month")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_id=account_id,
            loan_type=loan_type,
            principal=principal,
            interest_rate=interest_rate,
            term_months=term_months,
            remaining_balance=principal,
            start_date=start_date,
            status=status,
            monthly_payment_amount=monthly_payment_amount,
            next_payment_date=add_months(start_date, 1)
        )
        self.storage.insert(self.loans_table, loan.id, loan.to_dict())
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_owned_loan(self, loan_id: str, user_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None or loan.user_id != user_id:
            raise NotFoundError("Loan not found", loan_id=loan_id)
        return loan

    def get_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {"status": status.value} if status else {}
        return [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]

    def try_update_loan(self, loan: Loan, **changes: Any) -> Optional[Tuple[Loan, Dict[str, Any]]]:
        """
        Conditionally apply field changes on top of the version `loan` was read at.

        Returns (updated loan, previous values of the changed fields), or None
        if another writer updated the loan since it was read.
        """
        previous = {key: value for key, value in loan.to_dict().items() if key in changes}
        expected = loan.version
        for key, value in changes.items():
            setattr(loan, key, value)
        loan.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_set(self.loans_table, loan.id, expected, loan.to_dict()):
            return None
        loan.version = expected + 1
        return loan, previous

    def update_loan(self, loan: Loan, **changes: Any) -> Tuple[Loan, Dict[str, Any]]:
        """Like try_update_loan but a lost race is an error"""
        result = self.try_update_loan(loan, **changes)
        if result is None:
            raise PersistenceError("Loan changed concurrently", loan_id=loan.id)
        return result

    def add_payment(self, payment: LoanPayment) -> LoanPayment:
        if not self.storage.insert(self.payments_table, payment.id, payment.to_dict()):
            raise PersistenceError("Loan payment id collision", payment_id=payment.id)
        return payment

    def new_payment(self, loan: Loan, **fields: Any) -> LoanPayment:
        """Build (not store) a payment row for a loan"""
        now = datetime.now(timezone.utc)
        return LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            user_id=loan.user_id,
            **fields
        )

    def get_payments(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[LoanPayment]:
        """Payments for a loan ordered by payment_date, then insertion time"""
        filters: Dict[str, Any] = {"loan_id": loan_id}
        if status:
            filters["status"] = status.value
        payments = [LoanPayment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def get_completed_payments(self, loan_id: str) -> List[LoanPayment]:
        return self.get_payments(loan_id, PaymentStatus.COMPLETED)

    def set_payment_status(self, payment: LoanPayment, status: PaymentStatus) -> Dict[str, Any]:
        """Conditionally change a payment's status; returns the previous value for compensation"""
        previous = {'status': payment.status.value}
        expected = payment.version
        payment.status = status
        payment.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_set(self.payments_table, payment.id, expected, payment.to_dict()):
            raise PersistenceError("Loan payment changed concurrently", payment_id=payment.id)
        payment.version = expected + 1
        return previous

    def get_pending_fees(self, loan_id: str) -> List[LoanPayment]:
        return [p for p in self.get_payments(loan_id, PaymentStatus.PENDING)
                if p.payment_type == PaymentType.LATE_FEE]
