"""
Auto-Payment Manager

Borrowers opt a loan into automatic monthly payments drawn from one of their
accounts on a chosen day of the month (1-28 so every month has it).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accounts import LedgerStore
from .amortization import loan_monthly_payment
from .audit import AuditEventType, AuditTrail
from .errors import ConflictError
from .loans import Loan, LoanStatus, LoanStore, PaymentType
from .logging_config import get_logger, log_action
from .money import quantize_money
from .notifications import NotificationPriority, NotificationService, NotificationType
from .payments import LoanPaymentProcessor
from .validation import validate_payment_day

logger = get_logger(__name__)


@dataclass
class AutoPaymentRunResult:
    processed: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed_count': len(self.processed),
            'failed_count': len(self.failed),
            'processed': self.processed,
            'failed': self.failed
        }


class AutoPaymentManager:
    """Enables, disables and runs scheduled loan payments"""

    def __init__(
        self,
        loan_store: LoanStore,
        ledger: LedgerStore,
        payments: LoanPaymentProcessor,
        audit_trail: AuditTrail,
        notifications: NotificationService
    ):
        self.loans = loan_store
        self.ledger = ledger
        self.payments = payments
        self.audit = audit_trail
        self.notifications = notifications

    def enable(self, user_id: str, loan_id: str, account_id: str, payment_day: int = 1) -> Loan:
        """
        Turn on auto-payment for a loan.

        Raises:
            ValidationError: payment_day outside 1-28 or account inactive
            NotFoundError: Loan or account not owned by the caller
            ConflictError: Loan not active
        """
        payment_day = validate_payment_day(payment_day)
        loan = self._active_loan(user_id, loan_id)
        account = self.ledger.get_owned_active_account(account_id, user_id)

        loan, _ = self.loans.update_loan(
            loan,
            auto_payment_enabled=True,
            auto_payment_account_id=account.id,
            auto_payment_day=payment_day
        )

        self.audit.log_event(
            AuditEventType.AUTO_PAYMENT_ENABLED, "loan", loan.id,
            {'account_id': account.id, 'payment_day': payment_day},
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.AUTO_PAYMENT_ENABLED, "Auto-payment enabled",
            f"Your {loan.loan_type} loan will be paid automatically on day {payment_day} of each month.",
            priority=NotificationPriority.LOW,
            metadata={'loan_id': loan.id}
        )
        log_action(logger, "info", f"Auto-payment enabled for loan {loan.id}",
                   user_id=user_id, action="enable_auto_payment", resource=loan.id)
        return loan

    def disable(self, user_id: str, loan_id: str) -> Loan:
        loan = self.loans.get_owned_loan(loan_id, user_id)
        loan, _ = self.loans.update_loan(
            loan,
            auto_payment_enabled=False,
            auto_payment_account_id=None,
            auto_payment_day=None
        )

        self.audit.log_event(AuditEventType.AUTO_PAYMENT_DISABLED, "loan", loan.id, {}, user_id=user_id)
        self.notifications.notify(
            user_id, NotificationType.AUTO_PAYMENT_DISABLED, "Auto-payment disabled",
            f"Automatic payments for your {loan.loan_type} loan have been turned off.",
            priority=NotificationPriority.LOW,
            metadata={'loan_id': loan.id}
        )
        log_action(logger, "info", f"Auto-payment disabled for loan {loan.id}",
                   user_id=user_id, action="disable_auto_payment", resource=loan.id)
        return loan

    def is_due(self, loan: Loan, as_of: date) -> bool:
        return (
            loan.is_active
            and loan.auto_payment_enabled
            and loan.auto_payment_day == as_of.day
            and loan.next_payment_date is not None
            and loan.next_payment_date <= as_of
        )

    def run_auto_payments(self, as_of: Optional[date] = None) -> AutoPaymentRunResult:
        """Pay every loan due today; each failure is reported and the run continues"""
        as_of = as_of or date.today()
        result = AutoPaymentRunResult()

        for loan in self.loans.get_loans(LoanStatus.ACTIVE):
            if not self.is_due(loan, as_of):
                continue
            amount = quantize_money(min(
                loan_monthly_payment(loan) + Decimal(loan.late_fee_amount),
                self.payments.amount_due(loan)
            ))
            try:
                payment = self.payments.make_payment(
                    loan.user_id, loan.id, amount,
                    account_id=loan.auto_payment_account_id,
                    payment_type=PaymentType.AUTO,
                    as_of=as_of
                )
            except Exception as e:
                reason = getattr(e, 'message', None) or str(e)
                result.failed.append({'loan_id': loan.id, 'user_id': loan.user_id,
                                      'amount': str(amount), 'error': reason})
                log_action(logger, "warning", f"Auto-payment for loan {loan.id} failed: {reason}",
                           user_id=loan.user_id, action="auto_payment", resource=loan.id)
                self.notifications.notify(
                    loan.user_id, NotificationType.AUTO_PAYMENT_FAILED, "Auto-payment failed",
                    f"We could not collect your scheduled payment of ${amount}: {reason}",
                    priority=NotificationPriority.HIGH,
                    metadata={'loan_id': loan.id}
                )
                continue
            result.processed.append({
                'loan_id': loan.id,
                'user_id': loan.user_id,
                'amount': str(amount),
                'reference_number': payment.reference_number
            })

        logger.info(
            f"Auto-payment run for {as_of}: {len(result.processed)} paid, {len(result.failed)} failed"
        )
        return result

    def _active_loan(self, user_id: str, loan_id: str) -> Loan:
        loan = self.loans.get_owned_loan(loan_id, user_id)
        if not loan.is_active:
            raise ConflictError("Loan is not active", loan_id=loan.id, status=loan.status)
        return loan
