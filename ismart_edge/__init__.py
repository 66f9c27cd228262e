"""
i-SMART Edge: serverless backend for the i-SMART wallet application.

Exposes the platform's edge functions over a single service:
- API: FastAPI endpoints (one per edge function)
- Ledger: database-side balance procedures (BSK and trading balances)
- Chain: BSC JSON-RPC client for balance lookups and hot-wallet transfers
"""

__version__ = "0.1.0"
