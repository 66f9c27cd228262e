"""
Internal balance transfer endpoints.
"""

from typing import Dict, Any
from fastapi import APIRouter, Depends

from ismart_edge.core.auth import AuthUser, require_user
from ismart_edge.services.transfer_service import TransferService
from ismart_edge.api.dependencies import get_current_user, get_transfer_service
from ismart_edge.api.schemas import InternalTransferRequest


router = APIRouter(prefix="/functions", tags=["transfers"])


@router.post("/internal-balance-transfer")
async def internal_balance_transfer(
    request: InternalTransferRequest,
    user: AuthUser = Depends(get_current_user),
    transfer_service: TransferService = Depends(get_transfer_service)
) -> Dict[str, Any]:
    """
    Move funds between the on-chain wallet and the trading balance.

    ``to_trading`` requires the deposit ``tx_hash`` as proof;
    ``to_wallet`` queues an on-chain withdrawal.
    """
    user_id = require_user(user)
    return transfer_service.transfer(
        user_id,
        request.asset_id,
        request.amount,
        request.direction,
        request.tx_hash,
    )
