"""
FastAPI dependency injection.

Provides shared dependencies for API routes.
"""

from typing import Optional
import logging

from fastapi import Depends, Header

from ismart_edge.core.auth import AuthUser, TokenVerifier, require_admin
from ismart_edge.core.blockchain.bsc_client import BscClient
from ismart_edge.core.config_loader import load_config, load_secret
from ismart_edge.core.database_handler import DatabaseHandler
from ismart_edge.core.logger import configure_from_config
from ismart_edge.services.ad_mining_service import AdMiningService
from ismart_edge.services.balance_service import BalanceService
from ismart_edge.services.loan_service import LoanService
from ismart_edge.services.reconciliation_service import ReconciliationService
from ismart_edge.services.transfer_service import TransferService
from ismart_edge.services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)


# Global instances (initialized on startup)
_config: Optional[dict] = None
_token_verifier: Optional[TokenVerifier] = None
_bsc_client: Optional[BscClient] = None
_transfer_service: Optional[TransferService] = None
_reconciliation_service: Optional[ReconciliationService] = None
_loan_service: Optional[LoanService] = None
_ad_mining_service: Optional[AdMiningService] = None
_balance_service: Optional[BalanceService] = None
_withdrawal_service: Optional[WithdrawalService] = None


def initialize_services(config: Optional[dict] = None, bsc_client: Optional[BscClient] = None):
    """
    Initialize all services on application startup.

    Args:
        config: Validated configuration (loaded from config/config.yaml when None)
        bsc_client: Chain client to use instead of one built from the ``bsc`` section
    """
    global _config, _token_verifier, _bsc_client
    global _transfer_service, _reconciliation_service, _loan_service
    global _ad_mining_service, _balance_service, _withdrawal_service

    # Load configuration
    _config = config if config is not None else load_config()
    configure_from_config(_config)
    logger.info("Configuration loaded")

    DatabaseHandler.initialize_database(_config['database']['url'])

    auth_config = _config.get('auth', {})
    _token_verifier = TokenVerifier(
        load_secret(_config, 'auth', 'jwt_secret_env'),
        audience=auth_config.get('audience', 'authenticated'),
    )
    logger.info("Token verifier initialized")

    if bsc_client is None:
        bsc_config = _config.get('bsc', {})
        bsc_client = BscClient(
            bsc_config['rpc_url'],
            chain_id=int(bsc_config.get('chain_id', 56)),
            timeout=int(bsc_config.get('timeout', 30)),
        )
        logger.info(f"BSC client initialized ({bsc_config['rpc_url']})")
    _bsc_client = bsc_client

    _transfer_service = TransferService()
    _reconciliation_service = ReconciliationService(_config.get('reconciliation'))
    _loan_service = LoanService()
    _ad_mining_service = AdMiningService(_config.get('ad_mining'))
    _balance_service = BalanceService(_bsc_client)
    _withdrawal_service = WithdrawalService(_bsc_client, _config)

    logger.info("All services initialized successfully")


def is_initialized() -> bool:
    return _config is not None


def shutdown_services():
    """Close the database connection."""
    DatabaseHandler.close()


def get_token_verifier() -> TokenVerifier:
    """Get token verifier instance."""
    if _token_verifier is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _token_verifier


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthUser:
    """Authenticate the caller from the ``Authorization`` header."""
    return get_token_verifier().verify(authorization)


def get_admin_user(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    """Authenticate the caller and require admin or service role."""
    require_admin(user)
    return user


def get_transfer_service() -> TransferService:
    """Get transfer service instance."""
    if _transfer_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _transfer_service


def get_reconciliation_service() -> ReconciliationService:
    """Get reconciliation service instance."""
    if _reconciliation_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _reconciliation_service


def get_loan_service() -> LoanService:
    """Get loan service instance."""
    if _loan_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _loan_service


def get_ad_mining_service() -> AdMiningService:
    """Get ad mining service instance."""
    if _ad_mining_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _ad_mining_service


def get_balance_service() -> BalanceService:
    """Get balance service instance."""
    if _balance_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _balance_service


def get_withdrawal_service() -> WithdrawalService:
    """Get withdrawal service instance."""
    if _withdrawal_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _withdrawal_service
