"""
Wallet <-> trading balance transfers.

``to_trading`` credits the trading balance against a confirmed custodial
deposit (the on-chain ``tx_hash`` is the proof). ``to_wallet`` debits the
trading balance and queues a BEP-20 withdrawal that
``WithdrawalService.process_pending_withdrawals`` later sends on-chain.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from ismart_edge.core import ledger
from ismart_edge.core.errors import ValidationError
from ismart_edge.core.models import (
    AdminNotification,
    Asset,
    CustodialDeposit,
    InternalBalanceTransfer,
    Profile,
    UserWalletAddress,
    Withdrawal,
    db,
    lock_rows,
)
from ismart_edge.core.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

TAG = "[internal-balance-transfer]"

DIRECTIONS = ('to_trading', 'to_wallet')


def execute_internal_balance_transfer(
    user_id: uuid.UUID,
    asset: Asset,
    amount: Decimal,
    direction: str,
    tx_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Move funds between wallet and trading balance in one transaction.

    Args:
        user_id: Owner
        asset: Active asset row
        amount: Positive amount, already rounded
        direction: 'to_trading' or 'from_trading'
        tx_hash: Deposit transaction hash (required for 'to_trading')

    Returns:
        ``{"status": "completed", "transfer_id": ...}`` or
        ``{"status": "already_credited", "message": ...}``

    Raises:
        ValidationError: Deposit proof missing or insufficient
        InsufficientBalanceError: Trading balance too low for 'from_trading'
    """
    with db.atomic():
        if direction == 'to_trading':
            previous = InternalBalanceTransfer.get_or_none(
                (InternalBalanceTransfer.tx_hash == tx_hash)
                & (InternalBalanceTransfer.direction == 'to_trading')
                & (InternalBalanceTransfer.status == 'completed')
            )
            if previous is not None:
                return {
                    'status': 'already_credited',
                    'message': 'Already credited',
                    'transfer_id': str(previous.id),
                }

            deposit = lock_rows(CustodialDeposit.select().where(
                (CustodialDeposit.tx_hash == tx_hash)
                & (CustodialDeposit.user_id == user_id)
                & (CustodialDeposit.asset == asset.id)
                & (CustodialDeposit.status == 'confirmed')
            )).first()
            if deposit is None:
                raise ValidationError("No confirmed deposit found for this transaction")
            if amount > Decimal(deposit.amount):
                raise ValidationError(
                    f"Amount exceeds deposited amount ({Decimal(deposit.amount).normalize()} {asset.symbol})"
                )

            transfer = InternalBalanceTransfer.create(
                user_id=user_id,
                asset=asset.id,
                asset_symbol=asset.symbol,
                amount=amount,
                direction='to_trading',
                status='completed',
                tx_hash=tx_hash,
            )
            ledger.record_trading_entry(
                user_id, asset, amount, 0, ledger.ENTRY_DEPOSIT,
                reference_type='internal_transfer',
                reference_id=transfer.id,
                notes=f"Deposit {tx_hash}",
            )
            deposit.status = 'credited'
            deposit.credited_at = utcnow()
            deposit.save()

        elif direction == 'from_trading':
            transfer = InternalBalanceTransfer.create(
                user_id=user_id,
                asset=asset.id,
                asset_symbol=asset.symbol,
                amount=amount,
                direction='from_trading',
                status='completed',
            )
            ledger.record_trading_entry(
                user_id, asset, -amount, 0, ledger.ENTRY_WITHDRAWAL,
                reference_type='internal_transfer',
                reference_id=transfer.id,
                notes="Transfer to wallet",
            )

        else:
            raise ValidationError(f"Invalid transfer direction: {direction}")

    return {'status': 'completed', 'transfer_id': str(transfer.id)}


def resolve_wallet_address(user_id: uuid.UUID) -> Optional[str]:
    """
    Find the user's registered on-chain address.

    Order: profile BSC address, profile wallet address, primary ``wallets_user`` row.
    """
    profile = Profile.get_or_none(Profile.user_id == user_id)
    if profile is not None:
        address = profile.bsc_wallet_address or profile.wallet_address
        if address:
            return address

    wallet = UserWalletAddress.get_or_none(
        (UserWalletAddress.user_id == user_id) & (UserWalletAddress.is_primary == True)  # noqa: E712
    )
    return wallet.address if wallet is not None else None


class TransferService:
    """Service for moving balances between wallet and trading."""

    def transfer(
        self,
        user_id: uuid.UUID,
        asset_id: Any,
        amount: Any,
        direction: Optional[str],
        tx_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run an internal balance transfer.

        Args:
            user_id: Authenticated caller
            asset_id: Asset id
            amount: Positive number (JSON number or numeric string)
            direction: 'to_trading' or 'to_wallet'
            tx_hash: On-chain deposit hash, required for 'to_trading'

        Returns:
            Response fields: success, message, amount, symbol, transfer_id
        """
        if not asset_id or amount in (None, '', 0) or not direction:
            raise ValidationError("Missing required fields: asset_id, amount, direction")

        try:
            value = ledger.to_decimal(amount)
        except ValidationError:
            raise ValidationError("Amount must be a positive number")
        if value <= 0:
            raise ValidationError("Amount must be a positive number")

        if direction not in DIRECTIONS:
            raise ValidationError("Direction must be 'to_trading' or 'to_wallet'")

        if direction == 'to_trading' and (not isinstance(tx_hash, str) or not tx_hash.strip()):
            logger.error(f"{TAG} BLOCKED: to_trading without tx_hash")
            raise ValidationError(
                "tx_hash is required for to_trading transfers. On-chain deposit proof is mandatory."
            )

        safe_amount = ledger.round_amount(value)
        if safe_amount <= 0:
            raise ValidationError("Amount must be a positive number")

        asset = self._get_active_asset(asset_id)
        if asset is None:
            raise ValidationError("Asset not found or inactive")

        logger.info(
            f"{TAG} {direction} {safe_amount} {asset.symbol} for user {user_id}"
            + (f" TX: {tx_hash}" if tx_hash else "")
        )

        wallet_address = None
        if direction == 'to_wallet':
            wallet_address = resolve_wallet_address(user_id)
            if not wallet_address:
                raise ValidationError(
                    "No registered wallet address found. "
                    "Cannot transfer to wallet without a verified on-chain address."
                )

        result = execute_internal_balance_transfer(
            user_id,
            asset,
            safe_amount,
            'to_trading' if direction == 'to_trading' else 'from_trading',
            tx_hash.strip() if direction == 'to_trading' else None,
        )

        if result['status'] == 'already_credited':
            logger.info(f"{TAG} Already credited for TX: {tx_hash}")
            return {
                'success': True,
                'message': result['message'],
                'amount': float(safe_amount),
                'symbol': asset.symbol,
            }

        logger.info(f"{TAG} {direction} {safe_amount} {asset.symbol} completed for user {user_id}")

        if direction == 'to_wallet':
            self._queue_withdrawal(user_id, asset, safe_amount, wallet_address, result['transfer_id'])

        destination = "to trading balance" if direction == 'to_trading' else "to wallet (pending on-chain)"
        return {
            'success': True,
            'message': f"{safe_amount.normalize():f} {asset.symbol} transferred {destination}",
            'amount': float(safe_amount),
            'symbol': asset.symbol,
            'transfer_id': result['transfer_id'],
        }

    def _get_active_asset(self, asset_id: Any) -> Optional[Asset]:
        try:
            key = uuid.UUID(str(asset_id))
        except ValueError:
            return None
        return Asset.get_or_none((Asset.id == key) & (Asset.is_active == True))  # noqa: E712

    def _queue_withdrawal(
        self,
        user_id: uuid.UUID,
        asset: Asset,
        amount: Decimal,
        to_address: str,
        transfer_id: str,
    ):
        """Create the withdrawal row picked up by the on-chain sender."""
        try:
            with db.atomic():
                withdrawal = Withdrawal.create(
                    user_id=user_id,
                    asset=asset.id,
                    amount=amount,
                    fee=0,
                    net_amount=amount,
                    to_address=to_address,
                    network='BEP20',
                    status='processing',
                )
        except Exception as e:
            logger.error(f"{TAG} WARNING: Failed to create withdrawal record: {e}", exc_info=True)
            AdminNotification.create(
                type='withdrawal_creation_failed',
                priority='critical',
                title='Withdrawal Record Creation Failed',
                message=(
                    f"User {user_id} transferred {amount} {asset.symbol} to_wallet but withdrawal "
                    f"record failed: {e}. Manual intervention needed."
                ),
            )
            return

        InternalBalanceTransfer.update(notes=f"withdrawal_id:{withdrawal.id}").where(
            InternalBalanceTransfer.id == uuid.UUID(transfer_id)
        ).execute()
        logger.info(f"{TAG} Created withdrawal {withdrawal.id} for on-chain processing")
