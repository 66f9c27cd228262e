"""
Ad mining endpoints.
"""

from typing import Dict, Any
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ismart_edge.core.auth import AuthUser, require_user
from ismart_edge.services.ad_mining_service import AdMiningService
from ismart_edge.api.dependencies import get_admin_user, get_ad_mining_service, get_current_user
from ismart_edge.api.schemas import AdClickRequest


router = APIRouter(prefix="/functions", tags=["ads"])


@router.post("/process-ad-click")
async def process_ad_click(
    request: AdClickRequest,
    user: AuthUser = Depends(get_current_user),
    ad_mining_service: AdMiningService = Depends(get_ad_mining_service)
) -> Dict[str, Any]:
    """
    Credit the reward for a completed ad view.

    Subscribers earn withdrawable BSK; free users earn holding BSK.
    """
    user_id = require_user(user)
    return ad_mining_service.process_ad_click(user_id, request.ad_id, request.viewing_time_seconds)


@router.post("/ad-mining-daily-reset")
async def ad_mining_daily_reset(
    admin: AuthUser = Depends(get_admin_user),
    ad_mining_service: AdMiningService = Depends(get_ad_mining_service)
):
    """
    Daily maintenance: prune old view counters and expire subscriptions.

    Returns 207 when some steps failed.
    """
    result = ad_mining_service.daily_reset()
    if not result['success']:
        return JSONResponse(status_code=207, content=result)
    return result
