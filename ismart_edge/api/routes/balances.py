"""
Balance lookup endpoints.
"""

from typing import Dict, Any
from fastapi import APIRouter, Depends

from ismart_edge.core.auth import AuthUser, require_user
from ismart_edge.services.balance_service import BalanceService
from ismart_edge.api.dependencies import get_balance_service, get_current_user


router = APIRouter(prefix="/functions", tags=["balances"])


@router.post("/bep20-balances")
async def get_bep20_balances(
    user: AuthUser = Depends(get_current_user),
    balance_service: BalanceService = Depends(get_balance_service)
) -> Dict[str, Any]:
    """
    Get on-chain and trading balances for all active BEP-20 assets.

    On-chain balances are display only.
    """
    user_id = require_user(user)
    return balance_service.get_bep20_balances(user_id)
