"""
Compensation Log

Multi-step money operations (two-leg transfers, wire verification, payoff
settlement, loan payments) run as sagas. Each mutation is recorded in the
`transfer_sagas` table right after it is applied; when a later step fails the
recorded steps are undone in reverse order. Sagas left in flight by a crash
are picked up by `recover_incomplete`.

Step kinds:
    balance        account balance delta, undone by applying the opposite delta
    transaction    ledger row, undone by voiding it (completed -> failed)
    record_insert  row in another table, undone by setting its status field
    record_update  field-level change, undone by restoring the previous values
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .accounts import BalanceChange, LedgerStore
from .audit import AuditEventType, AuditTrail
from .errors import PersistenceError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)


class SagaStatus(Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


@dataclass
class TransferSaga(StorageRecord):
    """Persisted progress of one multi-step operation"""
    kind: str
    reference: str
    user_id: Optional[str]
    status: SagaStatus
    steps: List[Dict[str, Any]] = field(default_factory=list)
    failure_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    version: int = 0


class Saga:
    """Handle passed to the code performing the steps"""

    def __init__(self, log: 'CompensationLog', record: TransferSaga):
        self.log = log
        self.record = record

    @property
    def id(self) -> str:
        return self.record.id

    def _add(self, step: Dict[str, Any]) -> None:
        step['undone'] = False
        self.record.steps.append(step)
        self.log._persist(self.record)

    def balance_changed(self, change: BalanceChange) -> None:
        self._add({'kind': 'balance', 'account_id': change.account_id, 'delta': str(change.delta)})

    def transaction_written(self, reference: str) -> None:
        self._add({'kind': 'transaction', 'reference': reference})

    def record_inserted(self, table: str, record_id: str,
                        status_field: str = 'status', failed_value: str = 'failed') -> None:
        self._add({
            'kind': 'record_insert', 'table': table, 'record_id': record_id,
            'status_field': status_field, 'failed_value': failed_value
        })

    def record_updated(self, table: str, record_id: str, previous: Dict[str, Any]) -> None:
        self._add({'kind': 'record_update', 'table': table, 'record_id': record_id, 'previous': previous})

    def set_result(self, result: Dict[str, Any]) -> None:
        """Response to replay for the idempotency key; persisted when the saga completes"""
        self.record.result = result


class CompensationLog:
    """Creates, completes and compensates sagas"""

    def __init__(self, storage: StorageInterface, ledger: LedgerStore, audit_trail: AuditTrail,
                 max_retries: int = 5):
        self.storage = storage
        self.ledger = ledger
        self.audit = audit_trail
        self.table = "transfer_sagas"
        self.max_retries = max_retries

    def begin(self, kind: str, reference: str, user_id: Optional[str] = None,
              idempotency_key: Optional[str] = None) -> Saga:
        now = datetime.now(timezone.utc)
        record = TransferSaga(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            reference=reference,
            user_id=user_id,
            status=SagaStatus.IN_FLIGHT,
            idempotency_key=idempotency_key
        )
        if not self.storage.insert(self.table, record.id, record.to_dict()):
            raise PersistenceError("Could not start saga", reference=reference)
        return Saga(self, record)

    @contextmanager
    def run(self, kind: str, reference: str, user_id: Optional[str] = None,
            idempotency_key: Optional[str] = None) -> Iterator[Saga]:
        """
        Run a block of steps as one logical unit.

        Any exception raised inside the block compensates the recorded steps
        and is re-raised unchanged.
        """
        saga = self.begin(kind, reference, user_id, idempotency_key)
        try:
            yield saga
        except Exception as e:
            self.compensate(saga.record, reason=str(e) or type(e).__name__)
            raise
        self.complete(saga.record)

    def complete(self, record: TransferSaga) -> None:
        record.status = SagaStatus.COMPLETED
        self._persist(record)

    def compensate(self, record: TransferSaga, reason: str) -> bool:
        """
        Undo every recorded step that has not been undone yet, newest first.

        Returns True when the saga is fully compensated. A failing undo marks the
        saga compensation_failed so recovery can retry it; it does not raise.
        """
        record.failure_reason = reason
        for step in reversed(record.steps):
            if step.get('undone'):
                continue
            try:
                self._undo(step)
            except Exception as e:
                record.status = SagaStatus.COMPENSATION_FAILED
                self._persist(record)
                log_action(
                    logger, "error", f"Compensation of {record.kind} {record.reference} failed: {e}",
                    user_id=record.user_id, action="compensate", resource=record.reference,
                    extra={'saga_id': record.id, 'step': step}
                )
                self.audit.log_event(
                    AuditEventType.COMPENSATION_FAILED, "saga", record.id,
                    {'kind': record.kind, 'reference': record.reference, 'reason': reason, 'error': str(e)},
                    user_id=record.user_id
                )
                return False
            step['undone'] = True
            self._persist(record)

        record.status = SagaStatus.COMPENSATED
        self._persist(record)
        log_action(
            logger, "warning", f"Compensated {record.kind} {record.reference}: {reason}",
            user_id=record.user_id, action="compensate", resource=record.reference
        )
        self.audit.log_event(
            AuditEventType.TRANSFER_COMPENSATED, "saga", record.id,
            {'kind': record.kind, 'reference': record.reference, 'reason': reason,
             'steps_undone': len(record.steps)},
            user_id=record.user_id
        )
        return True

    def recover_incomplete(self, older_than: timedelta = timedelta(minutes=5)) -> List[str]:
        """
        Compensate sagas abandoned by a crashed process.

        Only sagas whose last update is older than `older_than` are touched so
        that live operations are not interrupted. Returns the ids handled.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        recovered = []
        for data in self.storage.load_all(self.table):
            record = TransferSaga.from_dict(data)
            if record.status not in (SagaStatus.IN_FLIGHT, SagaStatus.COMPENSATION_FAILED):
                continue
            if record.updated_at > cutoff:
                continue
            if self.compensate(record, reason=record.failure_reason or "recovered after interruption"):
                recovered.append(record.id)
        return recovered

    def get(self, saga_id: str) -> Optional[TransferSaga]:
        data = self.storage.load(self.table, saga_id)
        return TransferSaga.from_dict(data) if data else None

    def find_by_reference(self, reference: str) -> List[TransferSaga]:
        return [TransferSaga.from_dict(d) for d in self.storage.find(self.table, {'reference': reference})]

    def find_by_idempotency_key(self, key: str) -> List[TransferSaga]:
        return [TransferSaga.from_dict(d)
                for d in self.storage.find(self.table, {'idempotency_key': key})]

    def _persist(self, record: TransferSaga) -> None:
        record.updated_at = datetime.now(timezone.utc)
        expected = record.version
        if not self.storage.compare_and_set(self.table, record.id, expected, record.to_dict()):
            raise PersistenceError("Saga record changed concurrently", saga_id=record.id)
        record.version = expected + 1

    def _undo(self, step: Dict[str, Any]) -> None:
        kind = step['kind']
        if kind == 'balance':
            self.ledger.adjust_balance(step['account_id'], -Decimal(step['delta']), allow_inactive=True)
        elif kind == 'transaction':
            self.ledger.void_transaction(step['reference'])
        elif kind == 'record_insert':
            self._patch(step['table'], step['record_id'], {step['status_field']: step['failed_value']})
        elif kind == 'record_update':
            self._patch(step['table'], step['record_id'], step['previous'])
        else:
            raise PersistenceError(f"Unknown saga step kind: {kind}")

    def _patch(self, table: str, record_id: str, values: Dict[str, Any]) -> None:
        for _ in range(self.max_retries):
            current = self.storage.load(table, record_id)
            if current is None:
                return
            expected = current.get('version', 0)
            current.update(values)
            current['updated_at'] = datetime.now(timezone.utc).isoformat()
            if self.storage.compare_and_set(table, record_id, expected, current):
                return
        raise PersistenceError("Could not restore record", table=table, record_id=record_id)
