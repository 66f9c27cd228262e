"""
BSK loan endpoints.
"""

from typing import Dict, Any, Optional
from fastapi import APIRouter, Depends

from ismart_edge.core.auth import AuthUser, require_user
from ismart_edge.services.loan_service import LoanService
from ismart_edge.api.dependencies import get_admin_user, get_current_user, get_loan_service
from ismart_edge.api.schemas import (
    AutoDebitRequest,
    LoanApplyRequest,
    LoanDisburseRequest,
    LoanForecloseRequest,
    LoanRepayRequest,
)


router = APIRouter(prefix="/functions", tags=["loans"])


@router.post("/bsk-loan-apply")
async def apply_for_loan(
    request: LoanApplyRequest,
    user: AuthUser = Depends(get_current_user),
    loan_service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """
    Apply for a BSK loan.

    The loan is created in ``pending`` status and waits for admin approval.
    """
    user_id = require_user(user)
    return loan_service.apply(user_id, request.amount_inr, request.region)


@router.post("/bsk-loan-disburse")
async def disburse_loan(
    request: LoanDisburseRequest,
    admin: AuthUser = Depends(get_admin_user),
    loan_service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Approve and disburse, or reject, a pending loan."""
    return loan_service.disburse(admin.id, request.loan_id, request.action, request.admin_notes)


@router.post("/bsk-loan-repay")
async def repay_loan(
    request: LoanRepayRequest,
    user: AuthUser = Depends(get_current_user),
    loan_service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Pay one installment or prepay the whole loan from the holding balance."""
    user_id = require_user(user)
    return loan_service.repay(user_id, request.installment_id, request.payment_type)


@router.post("/bsk-loan-foreclose")
async def foreclose_loan(
    request: LoanForecloseRequest,
    user: AuthUser = Depends(get_current_user),
    loan_service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Settle the full outstanding amount from the withdrawable balance."""
    user_id = require_user(user)
    return loan_service.foreclose(user_id, request.loan_id)


@router.post("/bsk-loan-auto-debit")
async def auto_debit(
    request: Optional[AutoDebitRequest] = None,
    admin: AuthUser = Depends(get_admin_user),
    loan_service: LoanService = Depends(get_loan_service)
) -> Dict[str, Any]:
    """Collect installments that are due (scheduler or admin)."""
    process_date = request.process_date if request else None
    return loan_service.auto_debit(process_date)
