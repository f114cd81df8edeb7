"""
Early Payoff Calculator

Quotes and settles paying a loan off before term. The borrower pays the
outstanding principal less a fixed-rate discount, plus any fees already
assessed on the loan. Unearned future interest is waived.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .accounts import LedgerStore, TransactionType
from .amortization import loan_monthly_payment
from .audit import AuditEventType, AuditTrail
from .compensation import CompensationLog
from .config import get_config
from .errors import ConflictError, InsufficientFundsError, LedgerError, PersistenceError
from .loans import Loan, LoanPayment, LoanStatus, LoanStore, PaymentStatus, PaymentType
from .logging_config import get_logger, log_action
from .money import ZERO, quantize_money
from .notifications import NotificationService, NotificationType
from .references import PAYOFF_PREFIX, generate_reference

logger = get_logger(__name__)

PRINCIPAL_PAYMENT_TYPES = (PaymentType.MANUAL, PaymentType.AUTO, PaymentType.EARLY_PAYOFF)


@dataclass
class PayoffQuote:
    loan_id: str
    outstanding_principal: Decimal
    assessed_fees_and_interest: Decimal
    discount: Decimal
    payoff_amount: Decimal
    remaining_interest: Decimal
    interest_waived: Decimal
    discount_rate: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'outstanding_principal': str(self.outstanding_principal),
            'assessed_fees_and_interest': str(self.assessed_fees_and_interest),
            'discount': str(self.discount),
            'discount_rate': str(self.discount_rate),
            'payoff_amount': str(self.payoff_amount),
            'remaining_interest': str(self.remaining_interest),
            'interest_waived': str(self.interest_waived),
            'total_savings': str(self.interest_waived)
        }


@dataclass
class PayoffResult:
    quote: PayoffQuote
    reference_number: str
    payment_id: str
    new_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        result = self.quote.to_dict()
        result.update({
            'reference_number': self.reference_number,
            'payment_id': self.payment_id,
            'new_balance': str(self.new_balance),
            'loan_status': LoanStatus.COMPLETED.value
        })
        return result


class EarlyPayoffCalculator:
    """Quotes and executes early loan payoffs"""

    def __init__(
        self,
        loan_store: LoanStore,
        ledger: LedgerStore,
        compensation: CompensationLog,
        audit_trail: AuditTrail,
        notifications: NotificationService,
        discount_rate: Optional[Decimal] = None
    ):
        self.loans = loan_store
        self.ledger = ledger
        self.compensation = compensation
        self.audit = audit_trail
        self.notifications = notifications
        if discount_rate is None:
            discount_rate = Decimal(get_config().early_payoff_discount_rate)
        self.discount_rate = discount_rate

    def quote(self, loan: Loan, completed_payments: Iterable[LoanPayment]) -> PayoffQuote:
        """
        Price an early payoff. Pure: reads nothing beyond its arguments.

        outstanding  = principal - sum of principal repaid
        assessed     = remaining_balance - outstanding (posted fees/interest)
        discount     = outstanding * discount_rate
        payoff       = outstanding * (1 - discount_rate) + assessed

        The payoff is rounded once; discount is rounded separately for display,
        so the two can differ by a cent from outstanding - payoff.
        """
        if loan.status == LoanStatus.COMPLETED:
            raise ConflictError("Loan is already paid off", loan_id=loan.id)
        if not loan.is_active:
            raise ConflictError("Only active loans can be paid off early", loan_id=loan.id,
                                status=loan.status)

        repaid = sum(
            (p.principal_amount for p in completed_payments
             if p.status == PaymentStatus.COMPLETED and p.payment_type in PRINCIPAL_PAYMENT_TYPES),
            Decimal('0')
        )
        outstanding = quantize_money(max(Decimal(loan.principal) - repaid, ZERO))
        assessed = quantize_money(max(Decimal(loan.remaining_balance) - outstanding, ZERO))
        discount = quantize_money(outstanding * self.discount_rate)
        payoff = quantize_money(outstanding * (1 - self.discount_rate) + assessed)

        remaining_interest = ZERO
        if loan.interest_rate > 0:
            remaining_terms = max(loan.term_months - loan.payments_made, 0)
            remaining_interest = quantize_money(
                max(loan_monthly_payment(loan) * remaining_terms - outstanding, ZERO)
            )

        return PayoffQuote(
            loan_id=loan.id,
            outstanding_principal=outstanding,
            assessed_fees_and_interest=assessed,
            discount=discount,
            payoff_amount=payoff,
            remaining_interest=remaining_interest,
            interest_waived=remaining_interest + discount,
            discount_rate=self.discount_rate
        )

    def get_quote(self, user_id: str, loan_id: str) -> PayoffQuote:
        loan = self.loans.get_owned_loan(loan_id, user_id)
        return self.quote(loan, self.loans.get_completed_payments(loan.id))

    def execute(self, user_id: str, loan_id: str, as_of: Optional[date] = None) -> PayoffResult:
        """
        Settle the loan from its own funding account.

        Debit, payoff payment row, loan close and ledger row run as one saga:
        if closing the loan fails the debit is refunded and the payment row
        marked failed, so the loan is never left active with the account
        already debited.
        """
        as_of = as_of or date.today()
        loan = self.loans.get_owned_loan(loan_id, user_id)
        quote = self.quote(loan, self.loans.get_completed_payments(loan.id))
        account = self.ledger.get_owned_active_account(loan.account_id, user_id)

        if account.balance < quote.payoff_amount:
            self._audit_failure(user_id, loan, "insufficient_funds",
                                {'required': quote.payoff_amount, 'available': account.balance})
            raise InsufficientFundsError(
                required=quote.payoff_amount, available=account.balance,
                message="Insufficient funds for early payoff"
            )

        reference = generate_reference(PAYOFF_PREFIX)
        pending_fees = self.loans.get_pending_fees(loan.id)

        try:
            with self.compensation.run("early_payoff", reference, user_id) as saga:
                debit = self.ledger.adjust_balance(account.id, -quote.payoff_amount)
                saga.balance_changed(debit)

                payment = self.loans.add_payment(self.loans.new_payment(
                    loan,
                    amount=quote.payoff_amount,
                    principal_amount=quote.payoff_amount - quote.assessed_fees_and_interest,
                    interest_amount=ZERO,
                    late_fee=quote.assessed_fees_and_interest,
                    payment_type=PaymentType.EARLY_PAYOFF,
                    status=PaymentStatus.COMPLETED,
                    payment_date=as_of,
                    balance_after=ZERO,
                    reference_number=reference,
                    installments_covered=max(loan.term_months - loan.payments_made, 0),
                    schedule_number=loan.payments_made + 1,
                    account_id=account.id,
                    notes=(f"Early payoff with {self.discount_rate * 100:.0f}% discount. "
                           f"Saved ${quote.interest_waived}")
                ))
                saga.record_inserted(self.loans.payments_table, payment.id)

                for fee in pending_fees:
                    previous_status = self.loans.set_payment_status(fee, PaymentStatus.COMPLETED)
                    saga.record_updated(self.loans.payments_table, fee.id, previous_status)

                loan, previous = self.loans.update_loan(
                    loan,
                    status=LoanStatus.COMPLETED,
                    remaining_balance=ZERO,
                    late_fee_amount=ZERO,
                    is_late=False,
                    next_payment_date=None,
                    last_payment_date=as_of,
                    auto_payment_enabled=False
                )
                saga.record_updated(self.loans.loans_table, loan.id, previous)

                self.ledger.record_transaction(
                    account.id, user_id, TransactionType.LOAN_PAYOFF, quote.payoff_amount, reference,
                    f"Early payoff of {loan.loan_type} loan",
                    debit.balance_before, debit.balance_after
                )
                saga.transaction_written(reference)
        except Exception as e:
            self._audit_failure(user_id, loan, e.kind if isinstance(e, LedgerError) else "system_error",
                                {'reference': reference, 'error': str(e)})
            log_action(logger, "error", f"Early payoff of loan {loan.id} failed: {e}",
                       user_id=user_id, action="early_payoff", resource=loan.id)
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Early payoff could not be completed; no funds were moved") from e

        self.audit.log_event(
            AuditEventType.LOAN_PAID_OFF, "loan", loan.id,
            {
                'reference': reference,
                'payoff_amount': quote.payoff_amount,
                'discount': quote.discount,
                'interest_waived': quote.interest_waived,
                'account_id': account.id,
                'balance_before': debit.balance_before,
                'balance_after': debit.balance_after
            },
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.LOAN_PAID_OFF, "Loan paid off",
            f"Your {loan.loan_type} loan is paid off. You paid ${quote.payoff_amount} "
            f"and saved ${quote.interest_waived}.",
            metadata={'loan_id': loan.id, 'reference': reference}
        )
        log_action(logger, "info", f"Loan {loan.id} paid off early",
                   user_id=user_id, action="early_payoff", resource=loan.id,
                   extra={'payoff_amount': str(quote.payoff_amount)})
        return PayoffResult(quote, reference, payment.id, debit.balance_after)

    def _audit_failure(self, user_id: str, loan: Loan, reason: str, metadata: Dict[str, Any]) -> None:
        self.audit.log_event(
            AuditEventType.LOAN_PAYOFF_FAILED, "loan", loan.id,
            dict(metadata, reason=reason),
            user_id=user_id
        )
