"""
Trading reconciliation endpoints.
"""

from typing import Dict, Any, Optional
from fastapi import APIRouter, Depends

from ismart_edge.core.auth import AuthUser
from ismart_edge.services.reconciliation_service import ReconciliationService
from ismart_edge.api.dependencies import get_admin_user, get_reconciliation_service
from ismart_edge.api.schemas import ReconciliationRequest, TradingBalanceAdjustmentRequest


router = APIRouter(prefix="/functions", tags=["reconciliation"])


@router.post("/full-trading-reconciliation")
async def full_trading_reconciliation(
    request: Optional[ReconciliationRequest] = None,
    admin: AuthUser = Depends(get_admin_user),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """
    Compare every user's trading balance with the net of their ledger.

    ``check_and_halt`` disables trading when drift exceeds the halt threshold.
    """
    action = request.action if request else "check"
    return reconciliation_service.run(action=action, triggered_by=admin.id)


@router.get("/trading-reconciliation/assets")
async def reconciliation_assets(
    admin: AuthUser = Depends(get_admin_user),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """Per-asset totals of deposits, withdrawals, user balances and fees."""
    return reconciliation_service.summarize_assets()


@router.post("/admin-adjust-trading-balance")
async def admin_adjust_trading_balance(
    request: TradingBalanceAdjustmentRequest,
    admin: AuthUser = Depends(get_admin_user),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """Correct a reported drift with a signed RECONCILIATION ledger entry."""
    return reconciliation_service.adjust_trading_balance(
        admin_id=admin.id,
        admin_label=admin.email or admin.role,
        user_identifier=request.user_identifier,
        asset_symbol=request.asset_symbol,
        amount=request.amount,
        reason=request.reason,
        related_tx_hash=request.related_tx_hash,
        ledger_only=request.ledger_only,
    )
