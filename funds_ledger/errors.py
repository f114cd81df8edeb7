"""
Error Taxonomy

Every failure a money operation can report is a LedgerError subclass. The
HTTP layer maps `status_code` and `kind` to a response; nothing else in the
package needs to know about HTTP.
"""

from decimal import Decimal
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict


class LedgerError(Exception):
    """Base class for all ledger failures"""

    kind = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error body"""
        body = {"kind": self.kind, "message": self.message}
        for key, value in self.details.items():
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, (date, datetime)):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            body[key] = value
        return body


class ValidationError(LedgerError):
    """Malformed input or a business rule rejected before any mutation"""
    kind = "validation_error"
    status_code = 400


class AuthError(LedgerError):
    """Missing or invalid credentials"""
    kind = "auth_error"
    status_code = 401


class NotFoundError(LedgerError):
    """Entity does not exist or is not visible to the caller"""
    kind = "not_found"
    status_code = 404


class InsufficientFundsError(LedgerError):
    """Funding account cannot cover the requested debit"""
    kind = "insufficient_funds"
    status_code = 400

    def __init__(self, required: Decimal, available: Decimal, message: str = "Insufficient funds"):
        super().__init__(
            message,
            required=required,
            available=available,
            shortfall=required - available
        )
        self.required = required
        self.available = available
        self.shortfall = required - available


class ConflictError(LedgerError):
    """Entity is in a state that forbids the operation (already settled, code used, ...)"""
    kind = "conflict"
    status_code = 400


class PersistenceError(LedgerError):
    """Storage failure or lost write race; any partial work has been compensated"""
    kind = "system_error"
    status_code = 500
