"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


# Transfer schemas
class InternalTransferRequest(BaseModel):
    from_account_id: str
    to_account_number: str
    amount: str = Field(..., description="Decimal amount as string")
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None


class ExternalTransferRequest(BaseModel):
    from_account_id: str
    beneficiary_name: str
    beneficiary_bank: str
    account_number: str
    routing_number: str
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class WireInitiateRequest(BaseModel):
    from_account_id: str
    beneficiary_name: str
    beneficiary_bank: str
    routing_number: str
    account_number: str
    amount: str = Field(..., description="Decimal amount as string")
    swift_code: Optional[str] = None
    memo: Optional[str] = None


class WireCompleteRequest(BaseModel):
    transfer_id: str
    verification_code: str


class WireSettleRequest(BaseModel):
    succeeded: bool
    reason: Optional[str] = None


# Loan schemas
class LoanPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    account_id: Optional[str] = None


class EarlyPayoffRequest(BaseModel):
    execute: bool = False


class AutoPaymentRequest(BaseModel):
    enabled: bool
    account_id: Optional[str] = None
    payment_day: int = 1


class BatchRunRequest(BaseModel):
    as_of: Optional[date] = Field(None, description="Run date (defaults to today)")
