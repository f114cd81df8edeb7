"""
Wire Transfer Records

WireTransfer rows and their one-time verification codes. Codes are six digits,
stored only as a SHA-256 digest bound to the transfer id, and expire after a
configurable number of minutes.
"""

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import NotFoundError, PersistenceError
from .storage import StorageInterface, StorageRecord


class WireStatus(Enum):
    """pending_verification -> processing -> settled | failed"""
    PENDING_VERIFICATION = "pending_verification"
    PROCESSING = "processing"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class WireTransfer(StorageRecord):
    user_id: str
    from_account_id: str
    beneficiary_name: str
    beneficiary_bank: str
    routing_number: str
    account_number: str
    amount: Decimal
    reference_number: str
    status: WireStatus = WireStatus.PENDING_VERIFICATION
    swift_code: Optional[str] = None
    memo: Optional[str] = None
    verified_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    version: int = 0


@dataclass
class VerificationCode(StorageRecord):
    user_id: str
    transfer_id: str
    code_hash: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    version: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


def hash_code(transfer_id: str, code: str) -> str:
    return hashlib.sha256(f"{transfer_id}:{code}".encode('utf-8')).hexdigest()


class WireStore:
    """Persistence for wire transfers and verification codes"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.wires_table = "wire_transfers"
        self.codes_table = "verification_codes"

    def create_wire(self, wire: WireTransfer) -> WireTransfer:
        if not self.storage.insert(self.wires_table, wire.id, wire.to_dict()):
            raise PersistenceError("Wire transfer id collision", transfer_id=wire.id)
        return wire

    def get_wire(self, transfer_id: str) -> Optional[WireTransfer]:
        data = self.storage.load(self.wires_table, transfer_id)
        return WireTransfer.from_dict(data) if data else None

    def get_owned_wire(self, transfer_id: str, user_id: str) -> WireTransfer:
        wire = self.get_wire(transfer_id)
        if wire is None or wire.user_id != user_id:
            raise NotFoundError("Wire transfer not found", transfer_id=transfer_id)
        return wire

    def update_wire(self, wire: WireTransfer, **changes: Any) -> Tuple[WireTransfer, Dict[str, Any]]:
        """
        Conditionally apply field changes to a wire.

        Returns the updated wire and the previous values of the changed fields
        (for compensation). Raises PersistenceError if the wire moved on.
        """
        previous = {key: value for key, value in wire.to_dict().items() if key in changes}
        expected = wire.version
        for key, value in changes.items():
            setattr(wire, key, value)
        wire.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_set(self.wires_table, wire.id, expected, wire.to_dict()):
            raise PersistenceError("Wire transfer changed concurrently", transfer_id=wire.id)
        wire.version = expected + 1
        return wire, previous

    def issue_code(self, wire: WireTransfer, ttl_minutes: int) -> str:
        """Create a fresh code for the wire and return the plaintext once"""
        code = f"{secrets.randbelow(1_000_000):06d}"
        now = datetime.now(timezone.utc)
        record = VerificationCode(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=wire.user_id,
            transfer_id=wire.id,
            code_hash=hash_code(wire.id, code),
            expires_at=now + timedelta(minutes=ttl_minutes)
        )
        self.storage.insert(self.codes_table, record.id, record.to_dict())
        return code

    def find_code(self, transfer_id: str, user_id: str, code: str) -> Optional[VerificationCode]:
        """The newest code for this transfer matching the submitted digits"""
        digest = hash_code(transfer_id, code)
        candidates = [
            VerificationCode.from_dict(data)
            for data in self.storage.find(self.codes_table, {'transfer_id': transfer_id, 'user_id': user_id})
        ]
        matching = [c for c in candidates if hmac.compare_digest(c.code_hash, digest)]
        if not matching:
            return None
        return max(matching, key=lambda c: c.created_at)

    def consume_code(self, code: VerificationCode) -> Optional[Dict[str, Any]]:
        """
        Mark a code used with a conditional update.

        Returns the previous field values, or None when a concurrent request
        consumed the code first.
        """
        previous = {'is_used': code.is_used, 'used_at': None}
        expected = code.version
        code.is_used = True
        code.used_at = datetime.now(timezone.utc)
        code.updated_at = code.used_at
        if not self.storage.compare_and_set(self.codes_table, code.id, expected, code.to_dict()):
            return None
        code.version = expected + 1
        return previous
