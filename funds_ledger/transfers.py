"""
Transfer Processor

Internal (account-to-account), external (ACH-style) and wire transfers.

Every operation validates and checks ownership before touching state, then
applies its mutations inside a compensation saga so that a failure part-way
through reverses what was already applied. Successes and failures are both
written to the audit trail; notifications are sent only after success.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accounts import LedgerStore, TransactionType
from .audit import AuditEventType, AuditTrail
from .compensation import CompensationLog, SagaStatus
from .config import get_config
from .errors import (
    ConflictError, InsufficientFundsError, LedgerError, NotFoundError,
    PersistenceError, ValidationError
)
from .logging_config import get_logger, log_action
from .money import quantize_money
from .notifications import NotificationPriority, NotificationService, NotificationType
from .references import (
    EXTERNAL_PREFIX, INTERNAL_PREFIX, REVERSAL_PREFIX, WIRE_PREFIX,
    ReferenceRegistry, generate_reference, request_fingerprint, scoped_key
)
from .validation import (
    mask_account_number, require_text, validate_account_number, validate_amount,
    validate_routing_number, validate_swift_code, validate_verification_code
)
from .wires import WireStatus, WireStore, WireTransfer

logger = get_logger(__name__)


@dataclass
class TransferResult:
    """Outcome of a completed transfer"""
    reference_number: str
    new_balance: Decimal
    transfer_group_id: Optional[str] = None
    status: str = "completed"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "reference_number": self.reference_number,
            "new_balance": str(self.new_balance),
            "status": self.status
        }
        if self.transfer_group_id:
            result["transfer_group_id"] = self.transfer_group_id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferResult':
        return cls(
            reference_number=data["reference_number"],
            new_balance=Decimal(data["new_balance"]),
            transfer_group_id=data.get("transfer_group_id"),
            status=data.get("status", "completed")
        )


@dataclass
class WireInitiation:
    """A created wire and the one-time code handed to the delivery channel"""
    transfer: WireTransfer
    verification_code: str = field(repr=False)


class TransferProcessor:
    """Moves money between accounts and out of the bank"""

    def __init__(
        self,
        ledger: LedgerStore,
        wire_store: WireStore,
        registry: ReferenceRegistry,
        compensation: CompensationLog,
        audit_trail: AuditTrail,
        notifications: NotificationService
    ):
        self.ledger = ledger
        self.wires = wire_store
        self.registry = registry
        self.compensation = compensation
        self.audit = audit_trail
        self.notifications = notifications

        config = get_config()
        self.external_limit = Decimal(config.external_transfer_limit)
        self.wire_limit = Decimal(config.wire_transfer_limit)
        self.code_ttl_minutes = config.verification_code_ttl_minutes

    # Internal transfers

    def internal_transfer(
        self,
        user_id: str,
        from_account_id: str,
        to_account_number: str,
        amount: Any,
        memo: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Move funds between two accounts held at this bank.

        Both legs share a transfer_group_id and a reference pair
        (``<REF>-DR`` / ``<REF>-CR``). Passing the same idempotency_key again
        replays the first result instead of moving money twice.

        Raises:
            ValidationError: Bad amount, inactive account, same account
            NotFoundError: Source not owned by caller or destination unknown
            InsufficientFundsError: Source balance below amount
            ConflictError: idempotency_key still in flight, or reused with other parameters
            PersistenceError: Storage failure (all applied steps reversed)
        """
        amount = validate_amount(amount)
        source = self.ledger.get_owned_active_account(from_account_id, user_id)
        destination = self.ledger.get_account_by_number(to_account_number or "")
        if destination is None:
            raise NotFoundError("Recipient account not found", account_number=to_account_number)
        if not destination.is_active:
            raise ValidationError("Recipient account is not active")
        if destination.id == source.id:
            raise ValidationError("Cannot transfer to the same account")

        key = self._scope(user_id, idempotency_key)
        replay = self._reserve(key, "internal_transfer", request_fingerprint(
            "internal_transfer", from_account_id=source.id, to_account_id=destination.id,
            amount=quantize_money(amount)
        ))
        if replay is not None:
            return TransferResult.from_dict(replay)

        if source.balance < amount:
            self._release(key)
            self._audit_failure("internal_transfer", user_id, source.id, "insufficient_funds",
                                {'amount': amount, 'available': source.balance})
            raise InsufficientFundsError(required=amount, available=source.balance)

        reference = generate_reference(INTERNAL_PREFIX)
        group_id = str(uuid.uuid4())
        description = memo or f"Transfer to {mask_account_number(destination.account_number)}"

        try:
            with self.compensation.run("internal_transfer", reference, user_id, key) as saga:
                debit = self.ledger.adjust_balance(source.id, -amount)
                saga.balance_changed(debit)
                credit = self.ledger.adjust_balance(destination.id, amount)
                saga.balance_changed(credit)

                self.ledger.record_transaction(
                    source.id, user_id, TransactionType.DEBIT, amount, f"{reference}-DR",
                    description, debit.balance_before, debit.balance_after, group_id
                )
                saga.transaction_written(f"{reference}-DR")
                self.ledger.record_transaction(
                    destination.id, destination.owner_id, TransactionType.CREDIT, amount,
                    f"{reference}-CR", memo or f"Transfer from {mask_account_number(source.account_number)}",
                    credit.balance_before, credit.balance_after, group_id
                )
                saga.transaction_written(f"{reference}-CR")
                saga.set_result(TransferResult(reference, debit.balance_after, group_id).to_dict())
        except Exception as e:
            self._fail(key, "internal_transfer", user_id, source.id, e,
                       {'reference': reference, 'amount': amount})
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Transfer could not be completed; applied changes were reversed") from e

        result = TransferResult(reference, debit.balance_after, group_id)
        self._finish(key, result)

        self.audit.log_event(
            AuditEventType.INTERNAL_TRANSFER_COMPLETED, "transfer", group_id,
            {
                'reference': reference,
                'amount': amount,
                'from_account_id': source.id,
                'to_account_id': destination.id,
                'from_balance_before': debit.balance_before,
                'from_balance_after': debit.balance_after,
                'to_balance_before': credit.balance_before,
                'to_balance_after': credit.balance_after
            },
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.TRANSFER_SENT, "Transfer sent",
            f"You sent ${amount} to account {mask_account_number(destination.account_number)}",
            metadata={'reference': reference, 'amount': amount}
        )
        self.notifications.notify(
            destination.owner_id, NotificationType.TRANSFER_RECEIVED, "Transfer received",
            f"You received ${amount} from account {mask_account_number(source.account_number)}",
            metadata={'reference': reference, 'amount': amount}
        )
        log_action(logger, "info", f"Internal transfer {reference} completed",
                   user_id=user_id, action="internal_transfer", resource=reference,
                   extra={'amount': str(amount)})
        return result

    # External transfers

    def external_transfer(
        self,
        user_id: str,
        from_account_id: str,
        beneficiary_name: str,
        beneficiary_bank: str,
        account_number: str,
        routing_number: str,
        amount: Any,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Send funds to an account at another bank.

        Only the local source account is debited; the destination is never
        mutated here. Amounts above the external limit are rejected before any
        debit.
        """
        beneficiary_name = require_text(beneficiary_name, "beneficiary_name")
        beneficiary_bank = require_text(beneficiary_bank, "beneficiary_bank")
        routing_number = validate_routing_number(routing_number)
        account_number = validate_account_number(account_number)
        amount = validate_amount(amount, maximum=self.external_limit)

        source = self.ledger.get_owned_active_account(from_account_id, user_id)
        key = self._scope(user_id, idempotency_key)
        replay = self._reserve(key, "external_transfer", request_fingerprint(
            "external_transfer", from_account_id=source.id, routing_number=routing_number,
            account_number=account_number, amount=quantize_money(amount)
        ))
        if replay is not None:
            return TransferResult.from_dict(replay)

        if source.balance < amount:
            self._release(key)
            self._audit_failure("external_transfer", user_id, source.id, "insufficient_funds",
                                {'amount': amount, 'available': source.balance})
            raise InsufficientFundsError(required=amount, available=source.balance)

        reference = generate_reference(EXTERNAL_PREFIX)
        masked = mask_account_number(account_number)

        try:
            with self.compensation.run("external_transfer", reference, user_id, key) as saga:
                debit = self.ledger.adjust_balance(source.id, -amount)
                saga.balance_changed(debit)
                self.ledger.record_transaction(
                    source.id, user_id, TransactionType.EXTERNAL_TRANSFER, amount, reference,
                    description or f"External transfer to {beneficiary_name} at {beneficiary_bank} ({masked})",
                    debit.balance_before, debit.balance_after
                )
                saga.transaction_written(reference)
                saga.set_result(TransferResult(reference, debit.balance_after).to_dict())
        except Exception as e:
            self._fail(key, "external_transfer", user_id, source.id, e,
                       {'reference': reference, 'amount': amount})
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Transfer could not be completed; applied changes were reversed") from e

        result = TransferResult(reference, debit.balance_after)
        self._finish(key, result)

        self.audit.log_event(
            AuditEventType.EXTERNAL_TRANSFER_COMPLETED, "account", source.id,
            {
                'reference': reference,
                'amount': amount,
                'beneficiary_name': beneficiary_name,
                'beneficiary_bank': beneficiary_bank,
                'account_number': masked,
                'routing_number': routing_number,
                'old_balance': debit.balance_before,
                'new_balance': debit.balance_after
            },
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.EXTERNAL_TRANSFER_SENT, "External transfer sent",
            f"${amount} is on its way to {beneficiary_name} at {beneficiary_bank} ({masked})",
            metadata={'reference': reference, 'amount': amount}
        )
        log_action(logger, "info", f"External transfer {reference} completed",
                   user_id=user_id, action="external_transfer", resource=reference,
                   extra={'amount': str(amount), 'account_number': masked})
        return result

    # Wire transfers

    def initiate_wire_transfer(
        self,
        user_id: str,
        from_account_id: str,
        beneficiary_name: str,
        beneficiary_bank: str,
        routing_number: str,
        account_number: str,
        amount: Any,
        swift_code: Optional[str] = None,
        memo: Optional[str] = None
    ) -> WireInitiation:
        """
        Create a wire awaiting verification and issue its one-time code.

        No money moves yet. The code goes to the user through the notification
        channel and is returned to the caller for delivery; it is never stored
        in plaintext.
        """
        beneficiary_name = require_text(beneficiary_name, "beneficiary_name")
        beneficiary_bank = require_text(beneficiary_bank, "beneficiary_bank")
        routing_number = validate_routing_number(routing_number)
        account_number = validate_account_number(account_number)
        swift_code = validate_swift_code(swift_code)
        amount = validate_amount(amount, maximum=self.wire_limit)

        source = self.ledger.get_owned_active_account(from_account_id, user_id)
        if source.balance < amount:
            raise InsufficientFundsError(required=amount, available=source.balance)

        now = datetime.now(timezone.utc)
        wire = self.wires.create_wire(WireTransfer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            from_account_id=source.id,
            beneficiary_name=beneficiary_name,
            beneficiary_bank=beneficiary_bank,
            routing_number=routing_number,
            account_number=account_number,
            amount=amount,
            reference_number=generate_reference(WIRE_PREFIX),
            swift_code=swift_code,
            memo=memo
        ))
        code = self.wires.issue_code(wire, self.code_ttl_minutes)

        self.audit.log_event(
            AuditEventType.WIRE_TRANSFER_INITIATED, "wire_transfer", wire.id,
            {'reference': wire.reference_number, 'amount': amount,
             'account_number': mask_account_number(account_number)},
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.WIRE_VERIFICATION_CODE, "Wire transfer verification",
            f"Your verification code for wire {wire.reference_number} is {code}. "
            f"It expires in {self.code_ttl_minutes} minutes.",
            priority=NotificationPriority.HIGH,
            metadata={'transfer_id': wire.id},
            transient=True
        )
        log_action(logger, "info", f"Wire {wire.reference_number} awaiting verification",
                   user_id=user_id, action="wire_initiate", resource=wire.id)
        return WireInitiation(wire, code)

    def complete_wire_transfer(self, user_id: str, transfer_id: str,
                               verification_code: str) -> WireTransfer:
        """
        Verify the code and debit the source account.

        The code is consumed by a conditional update inside the same saga as
        the debit, so a failed debit restores it. A used code is a conflict; a
        wrong or expired code is a validation error. Neither mutates anything.
        """
        digits = validate_verification_code(verification_code)
        wire = self.wires.get_owned_wire(transfer_id, user_id)

        code = self.wires.find_code(wire.id, user_id, digits)
        if code is None:
            self._reject_code(user_id, wire, "invalid")
            raise ValidationError("Invalid verification code")
        if code.is_used:
            self._reject_code(user_id, wire, "already_used")
            raise ConflictError("Verification code has already been used")
        if code.is_expired():
            self._reject_code(user_id, wire, "expired")
            raise ValidationError("Verification code has expired")
        if wire.status != WireStatus.PENDING_VERIFICATION:
            raise ConflictError("Wire transfer is no longer awaiting verification",
                                status=wire.status)

        try:
            with self.compensation.run("wire_transfer", wire.reference_number, user_id) as saga:
                previous_code = self.wires.consume_code(code)
                if previous_code is None:
                    raise ConflictError("Verification code has already been used")
                saga.record_updated(self.wires.codes_table, code.id, previous_code)

                debit = self.ledger.adjust_balance(wire.from_account_id, -wire.amount)
                saga.balance_changed(debit)

                wire, previous_wire = self.wires.update_wire(
                    wire, status=WireStatus.PROCESSING, verified_at=datetime.now(timezone.utc)
                )
                saga.record_updated(self.wires.wires_table, wire.id, previous_wire)

                self.ledger.record_transaction(
                    wire.from_account_id, user_id, TransactionType.WIRE_TRANSFER, wire.amount,
                    wire.reference_number,
                    f"Wire transfer to {wire.beneficiary_name} at {wire.beneficiary_bank}",
                    debit.balance_before, debit.balance_after
                )
                saga.transaction_written(wire.reference_number)
        except Exception as e:
            self._fail(None, "wire_transfer", user_id, wire.from_account_id, e,
                       {'reference': wire.reference_number, 'transfer_id': wire.id})
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Transfer could not be completed; applied changes were reversed") from e

        self.audit.log_event(
            AuditEventType.WIRE_TRANSFER_PROCESSING, "wire_transfer", wire.id,
            {'reference': wire.reference_number, 'amount': wire.amount,
             'old_balance': debit.balance_before, 'new_balance': debit.balance_after},
            user_id=user_id
        )
        self.notifications.notify(
            user_id, NotificationType.WIRE_TRANSFER_PROCESSING, "Wire transfer processing",
            f"Your wire of ${wire.amount} to {wire.beneficiary_name} is being processed",
            metadata={'reference': wire.reference_number, 'transfer_id': wire.id}
        )
        log_action(logger, "info", f"Wire {wire.reference_number} verified and debited",
                   user_id=user_id, action="wire_complete", resource=wire.id)
        return wire

    def settle_wire_transfer(self, transfer_id: str, succeeded: bool,
                             reason: Optional[str] = None) -> WireTransfer:
        """
        Record the outcome reported by the payment network.

        processing -> settled, or processing -> failed with the debit refunded
        through a reversal ledger row.
        """
        wire = self.wires.get_wire(transfer_id)
        if wire is None:
            raise NotFoundError("Wire transfer not found", transfer_id=transfer_id)
        if wire.status != WireStatus.PROCESSING:
            raise ConflictError("Only processing wires can be settled", status=wire.status)

        now = datetime.now(timezone.utc)
        if succeeded:
            wire, _ = self.wires.update_wire(wire, status=WireStatus.SETTLED, settled_at=now)
            self.audit.log_event(
                AuditEventType.WIRE_TRANSFER_SETTLED, "wire_transfer", wire.id,
                {'reference': wire.reference_number, 'amount': wire.amount},
                user_id=wire.user_id
            )
            self.notifications.notify(
                wire.user_id, NotificationType.WIRE_TRANSFER_SETTLED, "Wire transfer completed",
                f"Your wire of ${wire.amount} to {wire.beneficiary_name} has been delivered",
                metadata={'reference': wire.reference_number}
            )
            return wire

        reason = reason or "Rejected by receiving bank"
        refund_reference = generate_reference(REVERSAL_PREFIX)
        try:
            with self.compensation.run("wire_refund", refund_reference, wire.user_id) as saga:
                refund = self.ledger.adjust_balance(wire.from_account_id, wire.amount, allow_inactive=True)
                saga.balance_changed(refund)
                self.ledger.record_transaction(
                    wire.from_account_id, wire.user_id, TransactionType.REVERSAL, wire.amount,
                    refund_reference, f"Refund of wire {wire.reference_number}: {reason}",
                    refund.balance_before, refund.balance_after
                )
                saga.transaction_written(refund_reference)
                wire, _ = self.wires.update_wire(
                    wire, status=WireStatus.FAILED, settled_at=now, failure_reason=reason
                )
        except Exception as e:
            self._fail(None, "wire_refund", wire.user_id, wire.from_account_id, e,
                       {'reference': wire.reference_number})
            if isinstance(e, LedgerError):
                raise
            raise PersistenceError("Transfer could not be completed; applied changes were reversed") from e

        self.audit.log_event(
            AuditEventType.WIRE_TRANSFER_FAILED, "wire_transfer", wire.id,
            {'reference': wire.reference_number, 'refund_reference': refund_reference,
             'amount': wire.amount, 'reason': reason},
            user_id=wire.user_id
        )
        self.notifications.notify(
            wire.user_id, NotificationType.WIRE_TRANSFER_FAILED, "Wire transfer failed",
            f"Your wire of ${wire.amount} could not be delivered and has been refunded",
            priority=NotificationPriority.HIGH,
            metadata={'reference': wire.reference_number, 'reason': reason}
        )
        return wire

    def recover_incomplete_transfers(self, older_than: timedelta = timedelta(minutes=5)) -> List[str]:
        """
        Compensate sagas a crashed process left behind, then settle the
        idempotency keys they held so that clients can retry.

        A stale in-flight key whose saga completed is marked completed with the
        saga's result, so a retry replays instead of moving money twice. A key
        whose saga was compensated, or that never got as far as a saga, is
        marked failed. Keys whose saga is still running or awaiting
        compensation stay in flight.
        """
        recovered = self.compensation.recover_incomplete(older_than)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} incomplete transfer(s)")

        for record in self.registry.stale_in_flight(older_than):
            sagas = self.compensation.find_by_idempotency_key(record["id"])
            if any(s.status in (SagaStatus.IN_FLIGHT, SagaStatus.COMPENSATION_FAILED) for s in sagas):
                continue
            done = next((s for s in sagas if s.status == SagaStatus.COMPLETED and s.result), None)
            if done is not None:
                self.registry.complete(record["id"], done.result)
            else:
                self.registry.fail(record["id"])
            log_action(logger, "warning", f"Released stale idempotency key {record['id']}",
                       action="recover_key", resource=record["id"],
                       extra={'status': "completed" if done is not None else "failed"})
        return recovered

    # Helpers

    @staticmethod
    def _scope(user_id: str, idempotency_key: Optional[str]) -> Optional[str]:
        return scoped_key(user_id, idempotency_key) if idempotency_key else None

    def _reserve(self, key: Optional[str], kind: str, fingerprint: str) -> Optional[Dict[str, Any]]:
        if not key:
            return None
        return self.registry.reserve(key, kind, fingerprint)

    def _finish(self, key: Optional[str], result: TransferResult) -> None:
        if key:
            self.registry.complete(key, result.to_dict())

    def _release(self, key: Optional[str]) -> None:
        if key:
            self.registry.fail(key)

    def _fail(self, key: Optional[str], kind: str, user_id: str, account_id: str,
              error: Exception, metadata: Dict[str, Any]) -> None:
        self._release(key)
        reason = error.kind if isinstance(error, LedgerError) else "system_error"
        self._audit_failure(kind, user_id, account_id, reason, dict(metadata, error=str(error)))
        log_action(logger, "error" if reason == "system_error" else "warning",
                   f"{kind} failed: {error}", user_id=user_id, action=kind, resource=account_id)

    def _audit_failure(self, kind: str, user_id: str, account_id: str, reason: str,
                       metadata: Dict[str, Any]) -> None:
        self.audit.log_event(
            AuditEventType.TRANSFER_FAILED, "account", account_id,
            dict(metadata, operation=kind, reason=reason),
            user_id=user_id
        )

    def _reject_code(self, user_id: str, wire: WireTransfer, reason: str) -> None:
        self.audit.log_event(
            AuditEventType.VERIFICATION_CODE_REJECTED, "wire_transfer", wire.id,
            {'reference': wire.reference_number, 'reason': reason},
            user_id=user_id
        )

