"""
On-chain withdrawal endpoints.
"""

from typing import Dict, Any
from fastapi import APIRouter, Depends

from ismart_edge.core.auth import AuthUser
from ismart_edge.services.withdrawal_service import WithdrawalService
from ismart_edge.api.dependencies import get_admin_user, get_withdrawal_service


router = APIRouter(prefix="/functions", tags=["withdrawals"])


@router.post("/process-pending-withdrawals")
async def process_pending_withdrawals(
    admin: AuthUser = Depends(get_admin_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service)
) -> Dict[str, Any]:
    """Send queued BEP-20 withdrawals from the hot wallet (scheduler or admin)."""
    return withdrawal_service.process_pending_withdrawals()
