"""
Transfer endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_user, require_system_token
from .schemas import (
    ExternalTransferRequest, InternalTransferRequest, WireCompleteRequest,
    WireInitiateRequest, WireSettleRequest
)

router = APIRouter()


@router.post("/internal")
async def internal_transfer(
    request: InternalTransferRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Move funds between two accounts at this bank"""
    result = system.transfer_processor.internal_transfer(
        user_id=user_id,
        from_account_id=request.from_account_id,
        to_account_number=request.to_account_number,
        amount=request.amount,
        memo=request.memo,
        idempotency_key=request.idempotency_key
    )
    return result.to_dict()


@router.post("/external")
async def external_transfer(
    request: ExternalTransferRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Send funds to an account at another bank"""
    result = system.transfer_processor.external_transfer(
        user_id=user_id,
        from_account_id=request.from_account_id,
        beneficiary_name=request.beneficiary_name,
        beneficiary_bank=request.beneficiary_bank,
        account_number=request.account_number,
        routing_number=request.routing_number,
        amount=request.amount,
        description=request.description,
        idempotency_key=request.idempotency_key
    )
    return result.to_dict()


@router.post("/wire/initiate")
async def initiate_wire_transfer(
    request: WireInitiateRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Create a wire and send its verification code to the user"""
    initiation = system.transfer_processor.initiate_wire_transfer(
        user_id=user_id,
        from_account_id=request.from_account_id,
        beneficiary_name=request.beneficiary_name,
        beneficiary_bank=request.beneficiary_bank,
        routing_number=request.routing_number,
        account_number=request.account_number,
        amount=request.amount,
        swift_code=request.swift_code,
        memo=request.memo
    )
    wire = initiation.transfer
    return {
        "transfer_id": wire.id,
        "reference_number": wire.reference_number,
        "status": wire.status.value,
        "message": "Verification code sent"
    }


@router.post("/wire/complete")
async def complete_wire_transfer(
    request: WireCompleteRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Confirm a wire with its verification code"""
    wire = system.transfer_processor.complete_wire_transfer(
        user_id=user_id,
        transfer_id=request.transfer_id,
        verification_code=request.verification_code
    )
    return {
        "transfer_id": wire.id,
        "reference_number": wire.reference_number,
        "status": wire.status.value
    }


@router.post("/wire/{transfer_id}/settle", dependencies=[Depends(require_system_token)])
async def settle_wire_transfer(
    transfer_id: str,
    request: WireSettleRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Record the payment network's outcome for a processing wire"""
    wire = system.transfer_processor.settle_wire_transfer(
        transfer_id, succeeded=request.succeeded, reason=request.reason
    )
    return {
        "transfer_id": wire.id,
        "reference_number": wire.reference_number,
        "status": wire.status.value,
        "failure_reason": wire.failure_reason
    }
