"""Pydantic schemas for API requests."""

from ismart_edge.api.schemas.transfer_schemas import InternalTransferRequest
from ismart_edge.api.schemas.loan_schemas import (
    LoanApplyRequest,
    LoanDisburseRequest,
    LoanRepayRequest,
    LoanForecloseRequest,
    AutoDebitRequest,
)
from ismart_edge.api.schemas.ad_schemas import AdClickRequest
from ismart_edge.api.schemas.reconciliation_schemas import (
    ReconciliationRequest,
    TradingBalanceAdjustmentRequest,
)

__all__ = [
    'InternalTransferRequest',
    'LoanApplyRequest',
    'LoanDisburseRequest',
    'LoanRepayRequest',
    'LoanForecloseRequest',
    'AutoDebitRequest',
    'AdClickRequest',
    'ReconciliationRequest',
    'TradingBalanceAdjustmentRequest',
]
