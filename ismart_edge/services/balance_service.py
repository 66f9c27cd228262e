"""
BEP-20 balance service.

Combines each active BSC asset's on-chain balance in the user's personal
wallet (display only) with the user's trading balance held by the platform.
"""

import logging
import uuid
from typing import Any, Dict, List

from peewee import fn

from ismart_edge.core import ledger
from ismart_edge.core.blockchain.bsc_client import BscClient
from ismart_edge.core.errors import ChainError
from ismart_edge.core.models import Asset
from ismart_edge.services.transfer_service import resolve_wallet_address

logger = logging.getLogger(__name__)

BSC_NETWORKS = ('bep20', 'bsc')


class BalanceService:
    """Service for on-chain and trading balance lookups."""

    def __init__(self, bsc_client: BscClient):
        self.bsc_client = bsc_client

    def list_bep20_assets(self) -> List[Asset]:
        return list(
            Asset.select()
            .where((Asset.is_active == True) & (fn.LOWER(Asset.network).in_(BSC_NETWORKS)))  # noqa: E712
            .order_by(Asset.symbol)
        )

    def get_bep20_balances(self, user_id: uuid.UUID) -> Dict[str, Any]:
        """
        Get on-chain and trading balances for every active BEP-20 asset.

        Native BNB (no contract address) is read with ``eth_getBalance``,
        tokens with ``balanceOf``. A failed chain lookup yields
        ``onchain_balance: None`` and an ``error`` note for that asset only.

        Returns:
            ``{"success": True, "wallet_address": ..., "balances": [...]}``
        """
        address = resolve_wallet_address(user_id)
        if address and not self.bsc_client.is_address(address):
            logger.warning(f"User {user_id} has an invalid wallet address: {address}")
            address = None

        balances = []
        for asset in self.list_bep20_assets():
            available, locked_amount = ledger.get_wallet_balance(user_id, asset)
            item = {
                'asset_id': str(asset.id),
                'symbol': asset.symbol,
                'name': asset.name,
                'contract_address': asset.contract_address,
                'decimals': asset.decimals,
                'onchain_balance': None,
                'app_available': float(available),
                'app_locked': float(locked_amount),
                'app_balance': float(available + locked_amount),
            }

            if address:
                try:
                    if asset.contract_address:
                        onchain = self.bsc_client.get_token_balance(
                            asset.contract_address, address, asset.decimals
                        )
                    else:
                        onchain = self.bsc_client.get_native_balance(address)
                    item['onchain_balance'] = float(onchain)
                except ChainError as e:
                    logger.warning(f"On-chain balance lookup failed for {asset.symbol}: {e.message}")
                    item['error'] = e.message
            else:
                item['error'] = 'No wallet address registered'

            balances.append(item)

        return {'success': True, 'wallet_address': address, 'balances': balances}
