"""
Pydantic schemas for ad mining requests.
"""

from pydantic import BaseModel, ConfigDict, Field


class AdClickRequest(BaseModel):
    """Request schema for a completed ad view."""

    model_config = ConfigDict(populate_by_name=True)

    ad_id: str = Field(..., alias="adId", description="Ad ID")
    viewing_time_seconds: float = Field(..., alias="viewingTimeSeconds", ge=0, description="Seconds the ad was viewed")
