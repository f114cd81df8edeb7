"""
Loan Payment Processor

Borrower-initiated and scheduled loan payments. A payment is applied to
outstanding late fees first, then to one month's interest on the outstanding
principal, then to principal. remaining_balance tracks principal plus unpaid
fees, so the interest portion does not reduce it.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from .accounts import LedgerStore, TransactionType
from .amortization import loan_monthly_payment, monthly_rate
from .audit import AuditEventType, AuditTrail
from .compensation import CompensationLog
from .config import get_config
from .errors import ConflictError, InsufficientFundsError, LedgerError, PersistenceError, ValidationError
from .loans import Loan, LoanStatus, LoanStore, PaymentStatus, PaymentType, add_months
from .logging_config import get_logger, log_action
from .money import ZERO, quantize_money
from .notifications import NotificationService, NotificationType
from .references import LOAN_PAYMENT_PREFIX, generate_reference
from .validation import validate_amount

logger = get_logger(__name__)


@dataclass
class PaymentAllocation:
    fee_portion: Decimal
    interest_portion: Decimal
    principal_portion: Decimal

    @property
    def total(self) -> Decimal:
        return self.fee_portion + self.interest_portion + self.principal_portion


@dataclass
class PaymentResult:
    payment_id: str
    reference_number: str
    allocation: PaymentAllocation
    remaining_balance: Decimal
    loan_status: LoanStatus
    next_payment_date: Optional[date]
    new_account_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'reference_number': self.reference_number,
            'late_fee_paid': str(self.allocation.fee_portion),
            'interest_paid': str(self.allocation.interest_portion),
            'principal_paid': str(self.allocation.principal_portion),
            'remaining_balance': str(self.remaining_balance),
            'loan_status': self.loan_status.value,
            'next_payment_date': self.next_payment_date.isoformat() if self.next_payment_date else None,
            'new_account_balance': str(self.new_account_balance)
        }


class LoanPaymentProcessor:
    """Applies payments to loans"""

    def __init__(
        self,
        loan_store: LoanStore,
        ledger: LedgerStore,
        compensation: CompensationLog,
        audit_trail: AuditTrail,
        notifications: NotificationService
    ):
        self.loans = loan_store
        self.ledger = ledger
        self.compensation = compensation
        self.audit = audit_trail
        self.notifications = notifications
        self.completion_tolerance = Decimal(get_config().completion_tolerance)

    @staticmethod
    def interest_due(loan: Loan) -> Decimal:
        """One month's interest on the outstanding principal"""
        outstanding = Decimal(loan.remaining_balance) - Decimal(loan.late_fee_amount)
        return quantize_money(max(outstanding, ZERO) * monthly_rate(loan.interest_rate))

    def amount_due(self, loan: Loan) -> Decimal:
        """Largest payment the loan accepts right now"""
        return quantize_money(Decimal(loan.remaining_balance) + self.interest_due(loan))

    def allocate(self, loan: Loan, amount: Decimal) -> PaymentAllocation:
        fee_portion = min(amount, Decimal(loan.late_fee_amount))
        interest_portion = min(amount - fee_portion, self.interest_due(loan))
        principal_outstanding = Decimal(loan.remaining_balance) - Decimal(loan.late_fee_amount)
        principal_portion = min(amount - fee_portion - interest_portion, principal_outstanding)
        return PaymentAllocation(
            quantize_money(fee_portion), quantize_money(interest_portion), quantize_money(principal_portion)
        )

    def make_payment(
        self,
        user_id: str,
        loan_id: str,
        amount: Any,
        account_id: Optional[str] = None,
        payment_type: PaymentType = PaymentType.MANUAL,
        as_of: Optional[date] = None
    ) -> PaymentResult:
        """
        Pay toward a loan from one of the borrower's accounts.

        Raises:
            ValidationError: Bad amount, amount above what is owed, inactive account
            NotFoundError: Loan or account not owned by the caller
            ConflictError: Loan not active
            InsufficientFundsError: Funding account cannot cover the amount
        """
        as_of = as_of or date.today()
        amount = validate_amount(amount)
        loan = self.loans.get_owned_loan(loan_id, user_id)
        if not loan.is_active:
            raise ConflictError("Loan is not active", loan_id=loan.id, status=loan.status)

        due = self.amount_due(loan)
        if amount > due:
            raise ValidationError("Payment amount exceeds remaining balance", amount_due=due)

        account = self.ledger.get_owned_active_account(account_id or loan.account_id, user_id)
        if account.balance < amount:
            self._audit_failure(user_id, loan, "insufficient_funds",
                                {'amount': amount, 'available': account.balance})
            raise InsufficientFundsError(required=amount, available=account.balance)

        allocation = self.allocate(loan, amount)
        monthly = quantize_money(loan_monthly_payment(loan))
        installments = int((amount - allocation.fee_portion) // monthly) if monthly > 0 else 0
        remaining_after = quantize_money(
            Decimal(loan.remaining_balance) - allocation.fee_portion - allocation.principal_portion
        )
        completed = remaining_after <= self.completion_tolerance

        payments_made = min(loan.payments_made + installments, loan.term_months)
        next_payment_date = None if completed else add_months(loan.start_date, payments_made + 1)
        # Caught up once the next due date is today or later
        still_late = not completed and loan.is_late and next_payment_date < as_of
        fees_left = Decimal(loan.late_fee_amount) - allocation.fee_portion

        reference = generate_reference(LOAN_PAYMENT_PREFIX)
        pending_fees = self.loans.get_pending_fees(loan.id) if fees_left <= 0 else []

        try:
            with self.compensation.run("loan_payment", reference, user_id) as saga:
                debit = self.ledger.adjust_balance(account.id, -amount)
                saga.balance_changed(debit)

                payment = self.loans.add_payment(self.loans.new_payment(
                    loan,
                    amount=amount,
                    principal_amount=allocation.principal_portion,
                    interest_amount=allocation.interest_portion,
                    late_fee=allocation.fee_portion,
                    payment_type=payment_type,
                    status=PaymentStatus.COMPLETED,
                    payment_date=as_of,
                    balance_after=ZERO if completed else remaining_after,
                    reference_number=reference,
                    schedule_number=loan.payments_made + 1 if installments > 0 else None,
                    installments_covered=installments,
                    account_id=account.id
                ))
                saga.record_inserted(self.loans.payments_table, payment.id)

                for fee in pending_fees:
                    previous_status = self.loans.set_payment_status(fee, PaymentStatus.COMPLETED)
                    saga.record_updated(self.loans.payments_table, fee.id, previous_status)

                changes = dict(
                    remaining_balance=ZERO if completed else remaining_after,
                    late_fee_amount=max(fees_left, ZERO),
                    payments_made=payments_made,
                    next_payment_date=next_payment_date,
                    last_payment_date=as_of,
                    is_late=still_late
                )
                if completed:
                    changes.update(status=LoanStatus.COMPLETED, auto_payment_enabled=False)
                loan, previous = self.loans.update_loan(loan, **changes)
                saga.record_updated(self.loans.loans_table, loan.id, previous)

                self.ledger.record_transaction(
                    account.id, user_id, TransactionType.LOAN_PAYMENT, amount, reference,
                    f"Loan payment ({payment_type.value}) for {loan.loan_type} loan",
                    debit.balance_before, debit.balance_after
                )
                saga.transaction_written(reference)
        except Exception as e:
            self._audit_failure(user_id, loan, e.kind if isinstance(e, LedgerError) else "system_error",
                                {'reference': reference, 'amount': amount, 'error': str(e)})
            log_action(logger, "error", f"Payment on loan {loan.id} failed: {e}",
                       user_id=user_id, action="loan_payment", resource=loan.id)
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Loan payment could not be completed; no funds were moved") from e

        self.audit.log_event(
            AuditEventType.LOAN_PAYMENT_MADE, "loan", loan.id,
            {
                'reference': reference,
                'amount': amount,
                'payment_type': payment_type,
                'fee_portion': allocation.fee_portion,
                'interest_portion': allocation.interest_portion,
                'principal_portion': allocation.principal_portion,
                'remaining_balance': loan.remaining_balance,
                'account_id': account.id
            },
            user_id=user_id
        )
        if completed:
            message = f"Your payment of ${amount} completed your loan. Congratulations!"
        else:
            message = f"We received your payment of ${amount}. Remaining balance: ${loan.remaining_balance}"
        self.notifications.notify(
            user_id, NotificationType.LOAN_PAYMENT_RECEIVED, "Loan payment received", message,
            metadata={'loan_id': loan.id, 'reference': reference}
        )
        log_action(logger, "info", f"Payment {reference} applied to loan {loan.id}",
                   user_id=user_id, action="loan_payment", resource=loan.id,
                   extra={'amount': str(amount), 'type': payment_type.value})

        return PaymentResult(
            payment_id=payment.id,
            reference_number=reference,
            allocation=allocation,
            remaining_balance=loan.remaining_balance,
            loan_status=loan.status,
            next_payment_date=loan.next_payment_date,
            new_account_balance=debit.balance_after
        )

    def _audit_failure(self, user_id: str, loan: Loan, reason: str, metadata: Dict[str, Any]) -> None:
        self.audit.log_event(
            AuditEventType.LOAN_PAYMENT_FAILED, "loan", loan.id,
            dict(metadata, reason=reason),
            user_id=user_id
        )
