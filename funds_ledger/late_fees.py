"""
Late Fee Assessor

Scheduled batch that charges one late fee per missed installment. The fee is
the larger of a percentage of the monthly payment and a flat floor. A loan
already flagged late is skipped, so rerunning the batch never double-charges.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amortization import loan_monthly_payment
from .audit import AuditEventType, AuditTrail
from .compensation import CompensationLog
from .config import get_config
from .loans import Loan, LoanStatus, LoanStore, PaymentStatus, PaymentType
from .logging_config import get_logger, log_action
from .money import quantize_money
from .notifications import NotificationPriority, NotificationService, NotificationType
from .references import LATE_FEE_PREFIX, generate_reference

logger = get_logger(__name__)


@dataclass
class LateFeeRunResult:
    processed_count: int = 0
    skipped_count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed_count': self.processed_count,
            'skipped_count': self.skipped_count,
            'details': self.details,
            'errors': self.errors
        }


class LateFeeAssessor:
    """Assesses late fees on overdue loans"""

    def __init__(
        self,
        loan_store: LoanStore,
        compensation: CompensationLog,
        audit_trail: AuditTrail,
        notifications: NotificationService,
        fee_rate: Optional[Decimal] = None,
        fee_floor: Optional[Decimal] = None
    ):
        self.loans = loan_store
        self.compensation = compensation
        self.audit = audit_trail
        self.notifications = notifications
        config = get_config()
        self.fee_rate = fee_rate if fee_rate is not None else Decimal(config.late_fee_rate)
        self.fee_floor = fee_floor if fee_floor is not None else Decimal(config.late_fee_floor)

    def fee_for(self, loan: Loan) -> Decimal:
        """max(monthly payment * rate, floor), rounded to cents"""
        return quantize_money(max(loan_monthly_payment(loan) * self.fee_rate, self.fee_floor))

    def is_overdue(self, loan: Loan, as_of: date) -> bool:
        return (
            loan.is_active
            and not loan.is_late
            and loan.next_payment_date is not None
            and loan.next_payment_date < as_of
        )

    def run(self, as_of: Optional[date] = None) -> LateFeeRunResult:
        """Charge every overdue loan once; one loan failing does not stop the batch"""
        as_of = as_of or date.today()
        result = LateFeeRunResult()

        for loan in self.loans.get_loans(LoanStatus.ACTIVE):
            if not self.is_overdue(loan, as_of):
                continue
            try:
                detail = self._assess(loan, as_of)
            except Exception as e:
                result.errors.append({'loan_id': loan.id, 'error': str(e)})
                log_action(logger, "error", f"Late fee assessment failed for loan {loan.id}: {e}",
                           user_id=loan.user_id, action="assess_late_fee", resource=loan.id)
                continue
            if detail is None:
                result.skipped_count += 1
            else:
                result.processed_count += 1
                result.details.append(detail)

        self.audit.log_event(
            AuditEventType.LATE_FEE_RUN_COMPLETED, "batch", f"late_fees:{as_of.isoformat()}",
            {
                'as_of': as_of,
                'processed_count': result.processed_count,
                'skipped_count': result.skipped_count,
                'error_count': len(result.errors)
            }
        )
        logger.info(
            f"Late fee run for {as_of}: {result.processed_count} assessed, "
            f"{result.skipped_count} skipped, {len(result.errors)} failed"
        )
        return result

    def _assess(self, loan: Loan, as_of: date) -> Optional[Dict[str, Any]]:
        fee = self.fee_for(loan)
        due_date = loan.next_payment_date
        reference = generate_reference(LATE_FEE_PREFIX)

        with self.compensation.run("late_fee", reference, loan.user_id) as saga:
            updated = self.loans.try_update_loan(
                loan,
                remaining_balance=quantize_money(Decimal(loan.remaining_balance) + fee),
                late_fee_amount=quantize_money(Decimal(loan.late_fee_amount) + fee),
                is_late=True
            )
            if updated is None:
                # A payment or another assessor got there first
                return None
            loan, previous = updated
            saga.record_updated(self.loans.loans_table, loan.id, previous)

            fee_row = self.loans.add_payment(self.loans.new_payment(
                loan,
                amount=fee,
                principal_amount=Decimal('0'),
                interest_amount=Decimal('0'),
                late_fee=fee,
                payment_type=PaymentType.LATE_FEE,
                status=PaymentStatus.PENDING,
                payment_date=as_of,
                balance_after=loan.remaining_balance,
                reference_number=reference,
                installments_covered=0,
                notes=f"Late fee for installment due {due_date.isoformat()}"
            ))
            saga.record_inserted(self.loans.payments_table, fee_row.id)

        days_late = (as_of - due_date).days
        self.notifications.notify(
            loan.user_id, NotificationType.LATE_FEE_ASSESSED, "Late fee assessed",
            f"A late fee of ${fee} was added to your {loan.loan_type} loan. "
            f"The payment due {due_date.isoformat()} is {days_late} days late.",
            priority=NotificationPriority.HIGH,
            metadata={'loan_id': loan.id, 'reference': reference}
        )
        self.audit.log_event(
            AuditEventType.LATE_FEE_ASSESSED, "loan", loan.id,
            {
                'reference': reference,
                'fee_amount': fee,
                'due_date': due_date,
                'days_late': days_late,
                'remaining_balance': loan.remaining_balance
            },
            user_id=loan.user_id
        )
        return {
            'loan_id': loan.id,
            'user_id': loan.user_id,
            'fee_amount': str(fee),
            'days_late': days_late,
            'due_date': due_date.isoformat()
        }
