"""
Pydantic schemas for balance transfer and withdrawal requests.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator


class InternalTransferRequest(BaseModel):
    """Request schema for a wallet <-> trading balance transfer."""

    asset_id: Optional[str] = Field(None, description="Asset ID")
    amount: Any = Field(None, description="Amount to move (number or numeric string)")
    direction: Optional[str] = Field(None, description="to_trading or to_wallet")
    tx_hash: Optional[str] = Field(None, description="Deposit transaction hash (required for to_trading)")

    @field_validator("tx_hash")
    @classmethod
    def strip_tx_hash(cls, v):
        if v is not None:
            return v.strip()
        return v
