"""
Balance procedures.

These functions are the only writers of ``user_bsk_balances`` and
``wallet_balances``. Each one runs inside a single database transaction,
locks the balance row it changes and appends the matching ledger row, so a
balance and its ledger can never drift apart through this code path.
"""

import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from ismart_edge.core.errors import InsufficientBalanceError, ValidationError
from ismart_edge.core.models import (
    Asset,
    BskLedgerEntry,
    TradingLedgerEntry,
    UserBskBalance,
    WalletBalance,
    ZERO,
    db,
    lock_rows,
)
from ismart_edge.core.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.00000001")

BSK_TX_TYPES = ('credit', 'debit', 'transfer')
BSK_BALANCE_TYPES = ('holding', 'withdrawable')

# trading_balance_ledger.entry_type values
ENTRY_DEPOSIT = 'DEPOSIT'
ENTRY_WITHDRAWAL = 'WITHDRAWAL'
ENTRY_WITHDRAWAL_REFUND = 'WITHDRAWAL_REFUND'
ENTRY_FILL_CREDIT = 'FILL_CREDIT'
ENTRY_FILL_DEBIT = 'FILL_DEBIT'
ENTRY_FEE_CREDIT = 'FEE_CREDIT'
ENTRY_RECONCILIATION = 'RECONCILIATION'


def to_decimal(value: Any) -> Decimal:
    """
    Convert a JSON number or string to Decimal.

    Raises:
        ValidationError: Value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def round_amount(value: Any) -> Decimal:
    """Round to 8 decimal places, half up."""
    return to_decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# BSK balances
# ---------------------------------------------------------------------------

def _lock_bsk_balance(user_id: uuid.UUID) -> UserBskBalance:
    """Fetch (or create) the user's BSK balance row under a row lock."""
    query = UserBskBalance.select().where(UserBskBalance.user_id == user_id)
    balance = lock_rows(query).first()
    if balance is None:
        balance = UserBskBalance.create(user_id=user_id)
    return balance


def get_bsk_balance(user_id: uuid.UUID) -> Tuple[Decimal, Decimal]:
    """
    Get a user's BSK balances.

    Returns:
        (holding, withdrawable); zeros when the user has no balance row
    """
    balance = UserBskBalance.get_or_none(UserBskBalance.user_id == user_id)
    if balance is None:
        return ZERO, ZERO
    return Decimal(balance.holding_balance), Decimal(balance.withdrawable_balance)


def record_bsk_transaction(
    user_id: uuid.UUID,
    idempotency_key: str,
    tx_type: str,
    tx_subtype: str,
    balance_type: str,
    amount_bsk: Any,
    notes: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> BskLedgerEntry:
    """
    Atomically apply a BSK balance change and record it in the unified ledger.

    Args:
        user_id: Balance owner
        idempotency_key: Unique key; repeating it returns the first entry unchanged
        tx_type: 'credit', 'debit' or 'transfer' (holding -> withdrawable)
        tx_subtype: Business reason (e.g. 'loan_repayment', 'ad_reward')
        balance_type: Bucket credited/debited ('holding' or 'withdrawable');
            for 'transfer' it is the destination bucket
        amount_bsk: Positive amount
        notes: Free-text note
        meta: JSON metadata

    Returns:
        The ledger entry (new or previously recorded)

    Raises:
        ValidationError: Bad arguments
        InsufficientBalanceError: Debit or transfer exceeds the bucket balance
    """
    if tx_type not in BSK_TX_TYPES:
        raise ValidationError(f"Invalid BSK tx_type: {tx_type}")
    if balance_type not in BSK_BALANCE_TYPES:
        raise ValidationError(f"Invalid BSK balance_type: {balance_type}")
    if tx_type == 'transfer' and balance_type != 'withdrawable':
        raise ValidationError("BSK transfers move holding balance to withdrawable")

    amount = round_amount(amount_bsk)
    if amount <= 0:
        raise ValidationError("BSK amount must be greater than 0")

    with db.atomic():
        existing = BskLedgerEntry.get_or_none(BskLedgerEntry.idempotency_key == idempotency_key)
        if existing is not None:
            logger.info(f"BSK transaction already recorded for key {idempotency_key}")
            return existing

        balance = _lock_bsk_balance(user_id)
        holding = Decimal(balance.holding_balance)
        withdrawable = Decimal(balance.withdrawable_balance)

        if tx_type == 'credit':
            if balance_type == 'holding':
                holding += amount
                balance.total_earned_holding = Decimal(balance.total_earned_holding) + amount
            else:
                withdrawable += amount
                balance.total_earned_withdrawable = Decimal(balance.total_earned_withdrawable) + amount
        elif tx_type == 'debit':
            current = holding if balance_type == 'holding' else withdrawable
            if current < amount:
                raise InsufficientBalanceError(
                    f"Insufficient {balance_type} BSK balance",
                    required=f"{amount:.4f}",
                    available=f"{current:.4f}",
                )
            if balance_type == 'holding':
                holding -= amount
            else:
                withdrawable -= amount
        else:
            if holding < amount:
                raise InsufficientBalanceError(
                    "Insufficient holding BSK balance",
                    required=f"{amount:.4f}",
                    available=f"{holding:.4f}",
                )
            holding -= amount
            withdrawable += amount

        balance.holding_balance = holding
        balance.withdrawable_balance = withdrawable
        balance.updated_at = utcnow()
        balance.save()

        entry = BskLedgerEntry.create(
            user_id=user_id,
            idempotency_key=idempotency_key,
            tx_type=tx_type,
            tx_subtype=tx_subtype,
            balance_type=balance_type,
            amount_bsk=amount,
            holding_after=holding,
            withdrawable_after=withdrawable,
            notes=notes,
            meta=meta or {},
        )

    logger.info(
        f"BSK {tx_type}/{tx_subtype} {amount} ({balance_type}) for user {user_id}: "
        f"holding={holding} withdrawable={withdrawable}"
    )
    return entry


# ---------------------------------------------------------------------------
# Trading balances
# ---------------------------------------------------------------------------

def _lock_wallet_balance(user_id: uuid.UUID, asset: Asset) -> WalletBalance:
    """Fetch (or create) a trading balance row under a row lock."""
    query = WalletBalance.select().where(
        (WalletBalance.user_id == user_id) & (WalletBalance.asset == asset.id)
    )
    balance = lock_rows(query).first()
    if balance is None:
        balance = WalletBalance.create(user_id=user_id, asset=asset.id)
    return balance


def get_wallet_balance(user_id: uuid.UUID, asset: Asset) -> Tuple[Decimal, Decimal]:
    """
    Get a user's trading balance for an asset.

    Returns:
        (available, locked); zeros when no balance row exists
    """
    balance = WalletBalance.get_or_none(
        (WalletBalance.user_id == user_id) & (WalletBalance.asset == asset.id)
    )
    if balance is None:
        return ZERO, ZERO
    return Decimal(balance.available), Decimal(balance.locked)


def record_trading_entry(
    user_id: uuid.UUID,
    asset: Asset,
    delta_available: Any,
    delta_locked: Any,
    entry_type: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> TradingLedgerEntry:
    """
    Atomically change a trading balance and append a ``trading_balance_ledger`` row.

    Args:
        user_id: Balance owner
        asset: Asset row
        delta_available: Signed change of the available balance
        delta_locked: Signed change of the locked balance
        entry_type: Ledger entry type (DEPOSIT, WITHDRAWAL, ...)
        reference_type: What caused the change (e.g. 'internal_transfer')
        reference_id: Id of the causing row
        notes: Free-text note

    Returns:
        The new ledger entry

    Raises:
        InsufficientBalanceError: Either balance would become negative
    """
    d_available = round_amount(delta_available)
    d_locked = round_amount(delta_locked)

    with db.atomic():
        balance = _lock_wallet_balance(user_id, asset)
        available = Decimal(balance.available) + d_available
        locked_amount = Decimal(balance.locked) + d_locked

        if available < 0 or locked_amount < 0:
            raise InsufficientBalanceError(
                "Insufficient trading balance",
                required=str(abs(d_available)),
                available=str(Decimal(balance.available)),
            )

        balance.available = available
        balance.locked = locked_amount
        balance.updated_at = utcnow()
        balance.save()

        entry = TradingLedgerEntry.create(
            user_id=user_id,
            asset_symbol=asset.symbol,
            delta_available=d_available,
            delta_locked=d_locked,
            balance_available_after=available,
            balance_locked_after=locked_amount,
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            notes=notes,
        )

    return entry


def record_ledger_correction(
    user_id: uuid.UUID,
    asset: Asset,
    delta_available: Any,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> TradingLedgerEntry:
    """
    Append a ``RECONCILIATION`` ledger row without touching the balance.

    Used to backfill ledger history for a balance change that was never
    recorded, which closes the drift reported by reconciliation.
    """
    d_available = round_amount(delta_available)

    with db.atomic():
        balance = _lock_wallet_balance(user_id, asset)
        entry = TradingLedgerEntry.create(
            user_id=user_id,
            asset_symbol=asset.symbol,
            delta_available=d_available,
            delta_locked=ZERO,
            balance_available_after=Decimal(balance.available),
            balance_locked_after=Decimal(balance.locked),
            entry_type=ENTRY_RECONCILIATION,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            notes=notes,
        )

    return entry
