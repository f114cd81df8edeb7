"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..errors import ValidationError
from .auth import BankingSystem, get_banking_system, get_current_user, require_system_token
from .schemas import AutoPaymentRequest, BatchRunRequest, EarlyPayoffRequest, LoanPaymentRequest

router = APIRouter()


@router.post("/late-fee-assessment", dependencies=[Depends(require_system_token)])
async def run_late_fee_assessment(
    request: Optional[BatchRunRequest] = None,
    system: BankingSystem = Depends(get_banking_system)
):
    """Charge late fees on every overdue loan"""
    as_of = request.as_of if request else None
    return system.late_fee_assessor.run(as_of).to_dict()


@router.post("/auto-payments/run", dependencies=[Depends(require_system_token)])
async def run_auto_payments(
    request: Optional[BatchRunRequest] = None,
    system: BankingSystem = Depends(get_banking_system)
):
    """Collect every auto-payment due on the run date"""
    as_of = request.as_of if request else None
    return system.auto_payment_manager.run_auto_payments(as_of).to_dict()


@router.get("/{loan_id}/amortization")
async def get_amortization_schedule(
    loan_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Full amortization schedule with paid rows flagged"""
    loan = system.loan_store.get_owned_loan(loan_id, user_id)
    schedule = system.amortization_engine.compute_schedule(
        loan, system.loan_store.get_completed_payments(loan.id)
    )
    result = schedule.to_dict()
    result["loan_id"] = loan.id
    return result


@router.get("/{loan_id}/early-payoff")
async def get_early_payoff_quote(
    loan_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Quote paying the loan off today"""
    return system.payoff_calculator.get_quote(user_id, loan_id).to_dict()


@router.post("/{loan_id}/early-payoff")
async def execute_early_payoff(
    loan_id: str,
    request: EarlyPayoffRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Quote, or settle when execute is true"""
    if not request.execute:
        return system.payoff_calculator.get_quote(user_id, loan_id).to_dict()
    return system.payoff_calculator.execute(user_id, loan_id).to_dict()


@router.post("/{loan_id}/payments")
async def make_loan_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Pay toward a loan"""
    result = system.payment_processor.make_payment(
        user_id, loan_id, request.amount, account_id=request.account_id
    )
    return result.to_dict()


@router.post("/{loan_id}/auto-payment")
async def set_auto_payment(
    loan_id: str,
    request: AutoPaymentRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Enable or disable automatic monthly payments"""
    manager = system.auto_payment_manager
    if request.enabled:
        if not request.account_id:
            raise ValidationError("account_id is required to enable auto-payment", field="account_id")
        loan = manager.enable(user_id, loan_id, request.account_id, request.payment_day)
    else:
        loan = manager.disable(user_id, loan_id)

    return {
        "loan_id": loan.id,
        "auto_payment_enabled": loan.auto_payment_enabled,
        "account_id": loan.auto_payment_account_id,
        "payment_day": loan.auto_payment_day
    }
