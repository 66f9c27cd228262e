"""
Pydantic schemas for reconciliation requests.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class ReconciliationRequest(BaseModel):
    """Request schema for a reconciliation run."""

    action: str = Field("check", description="check or check_and_halt")

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        if v not in ["check", "check_and_halt"]:
            raise ValueError("action must be check or check_and_halt")
        return v


class TradingBalanceAdjustmentRequest(BaseModel):
    """Request schema for an admin trading balance adjustment."""

    user_identifier: Optional[str] = Field(None, description="User id or username")
    asset_symbol: Optional[str] = Field(None, description="Asset symbol, e.g. USDT")
    amount: Any = Field(None, description="Positive to credit, negative to debit")
    reason: Optional[str] = Field(None, description="Audit reason")
    related_tx_hash: Optional[str] = Field(None, description="Optional on-chain reference")
    ledger_only: bool = Field(False, description="Backfill the ledger without changing the balance")
