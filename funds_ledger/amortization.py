"""
Loan Amortization Engine

Level-payment (annuity) schedules. Pure functions of the loan terms and its
completed payments: no storage access, safe to recompute on every request.

Arithmetic runs at full Decimal context precision; values are rounded to
cents only when a row or total is produced.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Set

from .loans import Loan, LoanPayment, PaymentType, add_months
from .money import ZERO, quantize_money

ONE = Decimal('1')


@dataclass
class ScheduleRow:
    payment_number: int
    payment_date: date
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal
    is_paid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_number': self.payment_number,
            'payment_date': self.payment_date.isoformat(),
            'payment_amount': str(self.payment_amount),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'remaining_balance': str(self.remaining_balance),
            'is_paid': self.is_paid
        }


@dataclass
class AmortizationSchedule:
    monthly_payment: Decimal
    total_interest: Decimal
    total_amount: Decimal
    rows: List[ScheduleRow]

    @property
    def paid_count(self) -> int:
        return sum(1 for row in self.rows if row.is_paid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'monthly_payment': str(self.monthly_payment),
            'total_interest': str(self.total_interest),
            'total_amount': str(self.total_amount),
            'payments_completed': self.paid_count,
            'schedule': [row.to_dict() for row in self.rows]
        }


def monthly_rate(annual_rate: Decimal) -> Decimal:
    """Annual percentage rate (6 means 6%) to a monthly fraction"""
    return Decimal(annual_rate) / Decimal('100') / Decimal('12')


def monthly_payment(principal: Decimal, annual_rate: Decimal, term_months: int) -> Decimal:
    """
    Level monthly payment at full precision.

    r = 0 gives principal / n; otherwise the annuity formula
    P * r(1+r)^n / ((1+r)^n - 1).
    """
    if term_months <= 0:
        raise ValueError("term_months must be positive")
    principal = Decimal(principal)
    r = monthly_rate(annual_rate)
    if r == 0:
        return principal / Decimal(term_months)
    factor = (ONE + r) ** term_months
    return principal * (r * factor) / (factor - ONE)


def loan_monthly_payment(loan: Loan) -> Decimal:
    """Stored monthly payment when present, otherwise the annuity formula"""
    if loan.monthly_payment_amount:
        return Decimal(loan.monthly_payment_amount)
    return monthly_payment(loan.principal, loan.interest_rate, loan.term_months)


class LoanAmortizationEngine:
    """Builds amortization schedules"""

    def compute_schedule(self, loan: Loan, completed_payments: Iterable[LoanPayment] = ()) -> AmortizationSchedule:
        """
        Full schedule for a loan, with rows flagged paid from its payments.

        A payment linked to schedule row s covering k installments marks rows
        s..s+k-1. Payments recorded before linkage existed (installments_covered
        is None) fill the earliest unpaid rows in payment_date order. An early
        payoff settles every remaining row.
        """
        payment = monthly_payment(loan.principal, loan.interest_rate, loan.term_months)
        r = monthly_rate(loan.interest_rate)

        balance = Decimal(loan.principal)
        total_interest = Decimal('0')
        rows: List[ScheduleRow] = []
        for month in range(1, loan.term_months + 1):
            interest = balance * r
            principal_portion = payment - interest
            balance = max(Decimal('0'), balance - principal_portion)
            total_interest += interest
            rows.append(ScheduleRow(
                payment_number=month,
                payment_date=add_months(loan.start_date, month),
                payment_amount=quantize_money(payment),
                principal_amount=quantize_money(principal_portion),
                interest_amount=quantize_money(interest),
                remaining_balance=quantize_money(balance)
            ))

        for number in self._paid_rows(list(completed_payments), loan.term_months):
            rows[number - 1].is_paid = True

        total_interest = quantize_money(total_interest)
        return AmortizationSchedule(
            monthly_payment=quantize_money(payment),
            total_interest=total_interest,
            total_amount=quantize_money(Decimal(loan.principal) + total_interest),
            rows=rows
        )

    @staticmethod
    def _paid_rows(payments: List[LoanPayment], term_months: int) -> Set[int]:
        paid: Set[int] = set()
        legacy: List[LoanPayment] = []

        for payment in payments:
            if payment.payment_type == PaymentType.EARLY_PAYOFF:
                return set(range(1, term_months + 1))
            if payment.payment_type == PaymentType.LATE_FEE:
                continue
            if payment.installments_covered is None:
                legacy.append(payment)
            elif payment.schedule_number and payment.installments_covered > 0:
                start = payment.schedule_number
                paid.update(n for n in range(start, start + payment.installments_covered)
                            if n <= term_months)

        for payment in sorted(legacy, key=lambda p: (p.payment_date, p.created_at)):
            unpaid = [n for n in range(1, term_months + 1) if n not in paid]
            if not unpaid:
                break
            paid.add(unpaid[0])

        return paid
