"""
Ledger Store

Account balances and the append-only Transaction ledger. Balances change only
through `adjust_balance`, a versioned compare-and-set retried on conflict, so
two concurrent writers can never lose each other's update.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .config import get_config
from .errors import (
    ConflictError, InsufficientFundsError, NotFoundError, PersistenceError, ValidationError
)
from .logging_config import get_logger
from .money import ZERO, quantize_money
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)


class AccountStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


class TransactionType(Enum):
    """Ledger entry types"""
    DEBIT = "debit"
    CREDIT = "credit"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    LOAN_PAYOFF = "loan_payoff"
    LOAN_PAYMENT = "loan_payment"
    EXTERNAL_TRANSFER = "external_transfer"
    WIRE_TRANSFER = "wire_transfer"
    REVERSAL = "reversal"


class TransactionStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class Account(StorageRecord):
    """Deposit account that funds transfers and loan payments"""
    owner_id: str
    account_number: str
    balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    account_type: str = "checking"
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class Transaction(StorageRecord):
    """
    One ledger row. Append-only: after insert the only permitted change is
    completed -> failed when a compensation voids the leg.
    """
    account_id: str
    user_id: str
    transaction_type: TransactionType
    amount: Decimal
    status: TransactionStatus
    reference: str
    description: str
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    transfer_group_id: Optional[str] = None
    version: int = 0


@dataclass
class BalanceChange:
    """Result of a successful conditional balance update"""
    account_id: str
    delta: Decimal
    balance_before: Decimal
    balance_after: Decimal


class LedgerStore:
    """Accounts and their Transaction rows"""

    def __init__(self, storage: StorageInterface, max_retries: Optional[int] = None):
        self.storage = storage
        self.accounts_table = "accounts"
        self.transactions_table = "transactions"
        self.max_retries = max_retries or get_config().balance_update_max_retries

    # Accounts

    def open_account(self, owner_id: str, account_number: str,
                     initial_balance: Decimal = ZERO, account_type: str = "checking") -> Account:
        """Create an account (onboarding collaborator entry point)"""
        if self.get_account_by_number(account_number):
            raise ConflictError("Account number already in use", account_number=account_number)
        if initial_balance < 0:
            raise ValidationError("Initial balance cannot be negative")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            account_number=account_number,
            balance=quantize_money(initial_balance),
            account_type=account_type
        )
        self.storage.insert(self.accounts_table, account.id, account.to_dict())
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        matches = self.storage.find(self.accounts_table, {"account_number": account_number})
        return Account.from_dict(matches[0]) if matches else None

    def get_owned_active_account(self, account_id: str, user_id: str) -> Account:
        """Load an account the caller owns and that can move money"""
        account = self.get_account(account_id)
        if account is None or account.owner_id != user_id:
            raise NotFoundError("Account not found", account_id=account_id)
        if not account.is_active:
            raise ValidationError("Account is not active", account_id=account_id)
        return account

    def set_status(self, account_id: str, status: AccountStatus) -> Account:
        for _ in range(self.max_retries):
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found", account_id=account_id)
            expected = account.version
            account.status = status
            account.updated_at = datetime.now(timezone.utc)
            if self.storage.compare_and_set(self.accounts_table, account.id, expected, account.to_dict()):
                account.version = expected + 1
                return account
        raise PersistenceError("Could not update account status", account_id=account_id)

    def adjust_balance(self, account_id: str, delta: Decimal,
                       allow_inactive: bool = False) -> BalanceChange:
        """
        Apply delta to an account balance with optimistic concurrency.

        Each attempt re-reads the account and writes only if its version is
        unchanged. A negative delta never takes the balance below zero.
        `allow_inactive` is for compensations, which must be able to restore
        funds even if the account was deactivated mid-operation.

        Raises:
            NotFoundError: Unknown account
            ValidationError: Account not active
            InsufficientFundsError: Debit larger than the current balance
            PersistenceError: Conflict persisted past max_retries
        """
        delta = quantize_money(delta)
        for attempt in range(1, self.max_retries + 1):
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found", account_id=account_id)
            if not account.is_active and not allow_inactive:
                raise ValidationError("Account is not active", account_id=account_id)

            balance_before = account.balance
            balance_after = balance_before + delta
            if balance_after < 0:
                raise InsufficientFundsError(required=-delta, available=balance_before)

            expected = account.version
            account.balance = balance_after
            account.updated_at = datetime.now(timezone.utc)
            if self.storage.compare_and_set(self.accounts_table, account.id, expected, account.to_dict()):
                return BalanceChange(account.id, delta, balance_before, balance_after)

            logger.debug(f"Balance update conflict on {account_id}, attempt {attempt}")

        raise PersistenceError("Balance update conflicted too many times", account_id=account_id)

    # Transactions

    def record_transaction(
        self,
        account_id: str,
        user_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        reference: str,
        description: str,
        balance_before: Optional[Decimal] = None,
        balance_after: Optional[Decimal] = None,
        transfer_group_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED
    ) -> Transaction:
        """Append a ledger row. The reference must be unique across all rows."""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=reference,
            created_at=now,
            updated_at=now,
            account_id=account_id,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=quantize_money(amount),
            status=status,
            reference=reference,
            description=description,
            balance_before=balance_before,
            balance_after=balance_after,
            transfer_group_id=transfer_group_id
        )
        # Keyed by reference so a duplicate reference can never be written twice
        if not self.storage.insert(self.transactions_table, reference, transaction.to_dict()):
            raise ConflictError("Duplicate transaction reference", reference=reference)
        return transaction

    def void_transaction(self, reference: str) -> None:
        """Mark a completed leg failed after its balance change was reversed"""
        data = self.storage.load(self.transactions_table, reference)
        if data is None:
            return
        transaction = Transaction.from_dict(data)
        if transaction.status == TransactionStatus.FAILED:
            return
        expected = transaction.version
        transaction.status = TransactionStatus.FAILED
        transaction.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_set(self.transactions_table, reference, expected, transaction.to_dict()):
            raise PersistenceError("Could not void transaction", reference=reference)

    def get_transaction(self, reference: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, reference)
        return Transaction.from_dict(data) if data else None

    def get_transactions_for_group(self, transfer_group_id: str) -> List[Transaction]:
        rows = self.storage.find(self.transactions_table, {"transfer_group_id": transfer_group_id})
        return sorted((Transaction.from_dict(row) for row in rows), key=lambda t: t.created_at)

    def get_account_transactions(self, account_id: str) -> List[Transaction]:
        rows = self.storage.find(self.transactions_table, {"account_id": account_id})
        return sorted((Transaction.from_dict(row) for row in rows), key=lambda t: t.created_at)
