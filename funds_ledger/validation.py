"""
Validation Gate

Stateless input checks run before any state is read or written. Each check
either returns the normalized value or raises ValidationError.
"""

import re
from decimal import Decimal
from typing import Any, Optional

from .errors import ValidationError
from .money import to_decimal, decimal_places

ABA_WEIGHTS = (3, 7, 1, 3, 7, 1, 3, 7, 1)
SWIFT_PATTERN = re.compile(r"[A-Z]{4}[A-Z]{2}[A-Z0-9]{2}([A-Z0-9]{3})?")
ROUTING_NUMBER_PATTERN = re.compile(r"[0-9]{9}")
ACCOUNT_NUMBER_PATTERN = re.compile(r"[0-9]{4,17}")
VERIFICATION_CODE_PATTERN = re.compile(r"[0-9]{6}")
PIN_PATTERN = re.compile(r"[0-9]{4,6}")


def validate_amount(value: Any, maximum: Optional[Decimal] = None, field: str = "amount") -> Decimal:
    """
    Parse and check a transfer or payment amount.

    The amount must be positive, carry at most two decimal places and, when a
    maximum is given, not exceed it.
    """
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}", field=field)

    if amount <= 0:
        raise ValidationError(f"{field.capitalize()} must be greater than 0", field=field)
    if decimal_places(amount) > 2:
        raise ValidationError(f"{field.capitalize()} cannot have more than 2 decimal places", field=field)
    if maximum is not None and amount > maximum:
        raise ValidationError(
            f"{field.capitalize()} exceeds the limit of {maximum}",
            field=field, limit=maximum
        )
    return amount


def is_valid_routing_number(routing_number: str) -> bool:
    """ABA routing checksum: weights 3,7,1 repeating, weighted sum divisible by 10"""
    if not routing_number or not ROUTING_NUMBER_PATTERN.fullmatch(routing_number):
        return False
    total = sum(int(digit) * weight for digit, weight in zip(routing_number, ABA_WEIGHTS))
    return total % 10 == 0


def validate_routing_number(routing_number: Optional[str]) -> str:
    cleaned = (routing_number or "").replace(" ", "")
    if not ROUTING_NUMBER_PATTERN.fullmatch(cleaned):
        raise ValidationError("Routing number must be exactly 9 digits", field="routing_number")
    if not is_valid_routing_number(cleaned):
        raise ValidationError("Invalid routing number", field="routing_number")
    return cleaned


def validate_account_number(account_number: Optional[str]) -> str:
    cleaned = (account_number or "").replace(" ", "")
    if not ACCOUNT_NUMBER_PATTERN.fullmatch(cleaned):
        raise ValidationError("Account number must be 4 to 17 digits", field="account_number")
    return cleaned


def validate_swift_code(swift_code: Optional[str]) -> Optional[str]:
    """SWIFT/BIC is optional; when present it must be 8 or 11 characters"""
    if not swift_code:
        return None
    cleaned = swift_code.strip().upper()
    if not SWIFT_PATTERN.fullmatch(cleaned):
        raise ValidationError("Invalid SWIFT code format", field="swift_code")
    return cleaned


def validate_verification_code(code: Optional[str]) -> str:
    cleaned = (code or "").strip()
    if not VERIFICATION_CODE_PATTERN.fullmatch(cleaned):
        raise ValidationError("Verification code must be 6 digits", field="verification_code")
    return cleaned


def validate_payment_day(payment_day: Any) -> int:
    if isinstance(payment_day, bool) or not isinstance(payment_day, int):
        raise ValidationError("Payment day must be a whole number", field="payment_day")
    if payment_day < 1 or payment_day > 28:
        raise ValidationError("Payment day must be between 1 and 28", field="payment_day")
    return payment_day


def validate_pin(pin: Optional[str]) -> str:
    cleaned = (pin or "").strip()
    if not PIN_PATTERN.fullmatch(cleaned):
        raise ValidationError("PIN must be 4 to 6 digits", field="pin")
    return cleaned


def require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} is required", field=field)
    return cleaned


def mask_account_number(account_number: str) -> str:
    """Show only the last four digits in logs and notifications"""
    if len(account_number) <= 4:
        return account_number
    return "*" * (len(account_number) - 4) + account_number[-4:]
