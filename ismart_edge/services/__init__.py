"""
Services layer for the i-SMART edge functions.

Each service implements one family of edge functions on top of the
database procedures in ``ismart_edge.core.ledger``; the API layer only
authenticates callers and maps request bodies onto these calls.
"""

from ismart_edge.services.transfer_service import TransferService
from ismart_edge.services.reconciliation_service import ReconciliationService
from ismart_edge.services.loan_service import LoanService
from ismart_edge.services.ad_mining_service import AdMiningService
from ismart_edge.services.balance_service import BalanceService
from ismart_edge.services.withdrawal_service import WithdrawalService

__all__ = [
    'TransferService',
    'ReconciliationService',
    'LoanService',
    'AdMiningService',
    'BalanceService',
    'WithdrawalService',
]
