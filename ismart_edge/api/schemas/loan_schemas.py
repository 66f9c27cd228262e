"""
Pydantic schemas for BSK loan requests.
"""

from typing import Optional
from pydantic import BaseModel, Field, field_validator


class LoanApplyRequest(BaseModel):
    """Request schema for a loan application."""

    amount_inr: float = Field(..., description="Requested amount in INR")
    region: Optional[str] = Field("IN", description="Applicant region code")

    @field_validator("amount_inr")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("amount_inr must be greater than 0")
        return v

    @field_validator("region")
    @classmethod
    def normalize_region(cls, v):
        return (v or "IN").strip().upper()


class LoanDisburseRequest(BaseModel):
    """Request schema for approving or rejecting a pending loan."""

    loan_id: str = Field(..., description="Loan ID")
    action: str = Field(..., description="approve or reject")
    admin_notes: Optional[str] = Field(None, description="Notes stored on the loan")

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        if v not in ["approve", "reject"]:
            raise ValueError("action must be approve or reject")
        return v


class LoanRepayRequest(BaseModel):
    """Request schema for an installment payment."""

    installment_id: str = Field(..., description="Installment ID")
    payment_type: str = Field("single_emi", description="single_emi or prepay_full")

    @field_validator("payment_type")
    @classmethod
    def validate_payment_type(cls, v):
        if v not in ["single_emi", "prepay_full"]:
            raise ValueError("payment_type must be single_emi or prepay_full")
        return v


class LoanForecloseRequest(BaseModel):
    """Request schema for settling a loan in full."""

    loan_id: str = Field(..., description="Loan ID")


class AutoDebitRequest(BaseModel):
    """Request schema for the auto-debit sweep."""

    process_date: Optional[str] = Field(None, description="Process installments due on or before this date (YYYY-MM-DD)")
    scheduled_run: bool = Field(False, description="Set by the scheduler")
