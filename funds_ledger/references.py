"""
Reference Numbers and Idempotency Keys

Reference numbers are ULID-style identifiers (48-bit millisecond timestamp +
80 random bits, Crockford base32) behind a human-readable prefix such as
``INT-`` or ``WIR-``. Within one process they are strictly increasing even
when many are generated in the same millisecond.

A reference number doubles as an idempotency key: `ReferenceRegistry` reserves
keys with a conditional insert so a retried request either replays the first
result or is rejected while the first attempt is still running. Keys live in a
per-user namespace and remember a fingerprint of the request that claimed them.
"""

import hashlib
import json
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .errors import ConflictError, PersistenceError
from .logging_config import get_logger
from .storage import StorageInterface

logger = get_logger(__name__)

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

INTERNAL_PREFIX = "INT"
EXTERNAL_PREFIX = "EXT"
WIRE_PREFIX = "WIR"
LOAN_PAYMENT_PREFIX = "PAY"
PAYOFF_PREFIX = "LPO"
LATE_FEE_PREFIX = "LTF"
REVERSAL_PREFIX = "REV"


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


class ReferenceGenerator:
    """Monotonic ULID generator"""

    def __init__(self):
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def new_ulid(self) -> str:
        with self._lock:
            now_ms = int(time.time() * 1000)
            if now_ms <= self._last_ms:
                # Same (or earlier) millisecond: bump the random part so ordering holds
                now_ms = self._last_ms
                self._last_random += 1
                if self._last_random >= 1 << 80:
                    now_ms += 1
                    self._last_random = secrets.randbits(79)
            else:
                self._last_random = secrets.randbits(79)
            self._last_ms = now_ms
            return _encode(now_ms, 10) + _encode(self._last_random, 16)

    def generate(self, prefix: str) -> str:
        """New reference such as ``EXT-01J9Z...``"""
        return f"{prefix}-{self.new_ulid()}"


_default_generator = ReferenceGenerator()


def generate_reference(prefix: str) -> str:
    """Generate a reference with the process-wide generator"""
    return _default_generator.generate(prefix)


def scoped_key(user_id: Optional[str], key: str) -> str:
    """Storage id of an idempotency key; each user has their own key space"""
    return f"{user_id or '-'}:{key}"


def request_fingerprint(kind: str, **params: Any) -> str:
    """SHA-256 over the operation kind and the parameters that move money"""
    canonical = json.dumps({'kind': kind, **{k: str(v) for k, v in params.items()}}, sort_keys=True)
    return hashlib.sha256(canonical.encode()).hexdigest()


class ReferenceRegistry:
    """
    Persistent record of reference / idempotency keys

    States: in_flight -> completed | failed. A failed key may be reserved
    again because the failed attempt was fully compensated. Keys are stored
    per user together with a fingerprint of the request they were first used
    for; reusing a key with other parameters is a conflict, never a replay.
    """

    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "reference_keys"

    def reserve(self, key: str, kind: str, fingerprint: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Claim a key for a new attempt.

        Returns:
            None if the caller now owns the key, or the stored result of an
            earlier completed attempt that should be replayed.

        Raises:
            ConflictError: If the key belongs to a different request, or
                another attempt with this key is in flight
        """
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "id": key,
            "kind": kind,
            "status": self.IN_FLIGHT,
            "request_hash": fingerprint,
            "result": None,
            "created_at": now,
            "updated_at": now,
            "version": 0
        }
        if self.storage.insert(self.table, key, record):
            return None

        existing = self.storage.load(self.table, key)
        if existing is None:
            raise PersistenceError("Reference key vanished during reservation", key=key)

        if existing["kind"] != kind:
            raise ConflictError("Reference key already used for a different operation", key=key)
        stored_hash = existing.get("request_hash")
        if fingerprint is not None and stored_hash is not None and stored_hash != fingerprint:
            raise ConflictError("Reference key already used with different parameters", key=key)
        if existing["status"] == self.COMPLETED:
            logger.info(f"Replaying completed {kind} for key {key}")
            return existing["result"]
        if existing["status"] == self.IN_FLIGHT:
            raise ConflictError("A request with this key is already in progress", key=key)

        retry = dict(existing, status=self.IN_FLIGHT, result=None, updated_at=now)
        if not self.storage.compare_and_set(self.table, key, existing["version"], retry):
            raise ConflictError("A request with this key is already in progress", key=key)
        return None

    def complete(self, key: str, result: Dict[str, Any]) -> None:
        self._finish(key, self.COMPLETED, result)

    def fail(self, key: str) -> None:
        self._finish(key, self.FAILED, None)

    def _finish(self, key: str, status: str, result: Optional[Dict[str, Any]]) -> None:
        existing = self.storage.load(self.table, key)
        if existing is None:
            return
        updated = dict(existing, status=status, result=result,
                       updated_at=datetime.now(timezone.utc).isoformat())
        if not self.storage.compare_and_set(self.table, key, existing["version"], updated):
            raise PersistenceError("Reference key changed concurrently", key=key)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self.storage.load(self.table, key)

    def stale_in_flight(self, older_than: timedelta) -> List[Dict[str, Any]]:
        """In-flight keys not touched for `older_than`, left behind by a crashed attempt"""
        cutoff = datetime.now(timezone.utc) - older_than
        return [
            record for record in self.storage.find(self.table, {"status": self.IN_FLIGHT})
            if datetime.fromisoformat(record["updated_at"]) <= cutoff
        ]
