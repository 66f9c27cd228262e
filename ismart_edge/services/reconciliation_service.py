"""
Trading balance reconciliation.

Compares every user's trading balance (``wallet_balances``) with the net of
their ``trading_balance_ledger`` entries and optionally halts trading when
the drift is too large. Admins correct a reported drift with a signed
``RECONCILIATION`` adjustment.
"""

import logging
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from peewee import fn

from ismart_edge.core import ledger
from ismart_edge.core.errors import NotFoundError, ValidationError
from ismart_edge.core.models import (
    AdminActionLog,
    AdminNotification,
    Asset,
    CustodialDeposit,
    PLATFORM_ACCOUNT_ID,
    Profile,
    ReconciliationRun,
    SystemSetting,
    TradingLedgerEntry,
    WalletBalance,
    Withdrawal,
    ZERO,
    db,
)
from ismart_edge.core.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

TAG = "[full-trading-reconciliation]"

ACTIONS = ('check', 'check_and_halt')

TRADING_ENABLED_KEY = 'trading_enabled'

BREAKDOWN_FIELDS = ('deposited', 'withdrawn', 'bought', 'sold', 'fees', 'recovered')


def _empty_breakdown() -> Dict[str, Decimal]:
    return {name: ZERO for name in BREAKDOWN_FIELDS}


def _as_float(value: Decimal) -> float:
    return float(ledger.round_amount(value))


class ReconciliationService:
    """Service for checking trading balances against the ledger."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize reconciliation service.

        Args:
            config: ``reconciliation`` config section (tolerance, halt_threshold,
                auto_halt, batch_size)
        """
        config = config or {}
        self.tolerance = Decimal(str(config.get('tolerance', 0.01)))
        self.halt_threshold = Decimal(str(config.get('halt_threshold', 1.0)))
        self.auto_halt = bool(config.get('auto_halt', False))
        self.batch_size = int(config.get('batch_size', 1000))

    def _iter_ledger(self):
        """Yield all ledger rows page by page."""
        page = 1
        while True:
            rows = list(
                TradingLedgerEntry.select()
                .order_by(TradingLedgerEntry.created_at, TradingLedgerEntry.id)
                .paginate(page, self.batch_size)
            )
            yield from rows
            if len(rows) < self.batch_size:
                break
            page += 1

    def _aggregate_ledger(self) -> Tuple[Dict[Tuple[uuid.UUID, str], Decimal], Dict[Tuple[uuid.UUID, str], Dict[str, Decimal]]]:
        """
        Sum ledger deltas per (user, asset symbol).

        Returns:
            (net per pair, breakdown per pair)
        """
        net: Dict[Tuple[uuid.UUID, str], Decimal] = defaultdict(lambda: ZERO)
        breakdown: Dict[Tuple[uuid.UUID, str], Dict[str, Decimal]] = defaultdict(_empty_breakdown)

        for row in self._iter_ledger():
            if row.user_id == PLATFORM_ACCOUNT_ID:
                continue
            key = (row.user_id, row.asset_symbol or 'UNKNOWN')
            d_available = Decimal(row.delta_available or 0)
            d_locked = Decimal(row.delta_locked or 0)
            net[key] += d_available + d_locked

            entry = breakdown[key]
            if row.entry_type == ledger.ENTRY_DEPOSIT:
                entry['deposited'] += d_available
            elif row.entry_type == ledger.ENTRY_WITHDRAWAL:
                entry['withdrawn'] += abs(d_available)
            elif row.entry_type == ledger.ENTRY_FILL_CREDIT:
                entry['bought'] += d_available
            elif row.entry_type == ledger.ENTRY_FILL_DEBIT:
                entry['sold'] += abs(d_locked)
            elif row.entry_type == ledger.ENTRY_FEE_CREDIT:
                entry['fees'] += d_available
            elif row.entry_type == ledger.ENTRY_RECONCILIATION:
                entry['recovered'] += d_available

        return net, breakdown

    def _load_balances(self) -> Dict[Tuple[uuid.UUID, str], Decimal]:
        """Total (available + locked) per (user, asset symbol), platform account excluded."""
        totals: Dict[Tuple[uuid.UUID, str], Decimal] = defaultdict(lambda: ZERO)
        query = (
            WalletBalance
            .select(WalletBalance, Asset)
            .join(Asset)
            .where(WalletBalance.user_id != PLATFORM_ACCOUNT_ID)
        )
        for balance in query:
            key = (balance.user_id, balance.asset.symbol)
            totals[key] += Decimal(balance.available) + Decimal(balance.locked)
        return totals

    def _usernames(self, user_ids) -> Dict[uuid.UUID, Optional[str]]:
        if not user_ids:
            return {}
        profiles = Profile.select(Profile.user_id, Profile.username).where(Profile.user_id.in_(list(user_ids)))
        return {p.user_id: p.username for p in profiles}

    def run(self, action: str = 'check', triggered_by: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """
        Reconcile all trading balances against the ledger.

        Args:
            action: 'check' (report only) or 'check_and_halt' (disable trading
                when a drift exceeds the halt threshold)
            triggered_by: Admin user id, None for service-role runs

        Returns:
            Response fields: success, run_id, checked_pairs, discrepancies,
            total_abs_drift, trading_halted
        """
        action = action or 'check'
        if action not in ACTIONS:
            raise ValidationError(f"Invalid action: {action}. Must be 'check' or 'check_and_halt'")

        logger.info(f"{TAG} Starting reconciliation (action={action})")

        ledger_net, breakdown = self._aggregate_ledger()
        balances = self._load_balances()

        pairs = set(ledger_net) | set(balances)
        discrepancies: List[Dict[str, Any]] = []
        total_abs_drift = ZERO
        max_abs_drift = ZERO

        for key in pairs:
            balance_total = balances.get(key, ZERO)
            net = ledger_net.get(key, ZERO)
            drift = balance_total - net
            if abs(drift) <= self.tolerance:
                continue
            total_abs_drift += abs(drift)
            max_abs_drift = max(max_abs_drift, abs(drift))
            discrepancies.append({
                'user_id': str(key[0]),
                'asset_symbol': key[1],
                'balance_total': _as_float(balance_total),
                'ledger_net': _as_float(net),
                'drift': _as_float(drift),
                'breakdown': {name: _as_float(v) for name, v in breakdown.get(key, _empty_breakdown()).items()},
            })

        names = self._usernames({uuid.UUID(d['user_id']) for d in discrepancies})
        for item in discrepancies:
            item['username'] = names.get(uuid.UUID(item['user_id']))
        discrepancies.sort(key=lambda d: abs(d['drift']), reverse=True)

        should_halt = max_abs_drift > self.halt_threshold and (action == 'check_and_halt' or self.auto_halt)
        reason = None
        if should_halt:
            reason = (
                f"Reconciliation found {len(discrepancies)} discrepancies "
                f"(max drift {max_abs_drift.normalize():f}, threshold {self.halt_threshold.normalize():f})"
            )
            self._halt_trading(reason)

        run = ReconciliationRun.create(
            triggered_by=triggered_by,
            action=action,
            checked_pairs=len(pairs),
            discrepancy_count=len(discrepancies),
            total_abs_drift=total_abs_drift,
            trading_halted=should_halt,
            details={'discrepancies': discrepancies[:100], 'halt_reason': reason},
        )

        logger.info(
            f"{TAG} Checked {len(pairs)} pairs, {len(discrepancies)} discrepancies, "
            f"total drift {total_abs_drift}, halted={should_halt}"
        )

        return {
            'success': True,
            'run_id': str(run.id),
            'checked_pairs': len(pairs),
            'discrepancies': discrepancies,
            'total_abs_drift': _as_float(total_abs_drift),
            'trading_halted': should_halt,
        }

    def _halt_trading(self, reason: str):
        """Set the ``trading_enabled`` system setting to false."""
        with db.atomic():
            SystemSetting.insert(
                key=TRADING_ENABLED_KEY,
                value=False,
                description=reason,
                updated_at=utcnow(),
            ).on_conflict(
                conflict_target=[SystemSetting.key],
                update={
                    SystemSetting.value: False,
                    SystemSetting.description: reason,
                    SystemSetting.updated_at: utcnow(),
                },
            ).execute()

            AdminNotification.create(
                type='trading_halted',
                priority='critical',
                title='Trading Halted by Reconciliation',
                message=reason,
            )
        logger.critical(f"{TAG} Trading halted: {reason}")

    def summarize_assets(self) -> Dict[str, Any]:
        """
        Per-asset global view of custody versus balances.

        For each active asset: credited deposits, completed and processing
        withdrawals, user available/locked totals, platform fee balance,
        expected balance (deposits - completed withdrawals) and the
        discrepancy ``user_total + platform_fees - expected``.
        """
        def total(query) -> Decimal:
            value = query.scalar()
            return ledger.round_amount(value if value is not None else 0)

        assets = []
        for asset in Asset.select().where(Asset.is_active == True).order_by(Asset.symbol):  # noqa: E712
            deposits = total(CustodialDeposit.select(fn.SUM(CustodialDeposit.amount)).where(
                (CustodialDeposit.asset == asset.id) & (CustodialDeposit.status == 'credited')
            ))
            withdrawn = total(Withdrawal.select(fn.SUM(Withdrawal.amount)).where(
                (Withdrawal.asset == asset.id) & (Withdrawal.status == 'completed')
            ))
            processing = total(Withdrawal.select(fn.SUM(Withdrawal.amount)).where(
                (Withdrawal.asset == asset.id) & (Withdrawal.status.in_(('processing', 'sending', 'submitted')))
            ))

            user_rows = WalletBalance.select().where(
                (WalletBalance.asset == asset.id) & (WalletBalance.user_id != PLATFORM_ACCOUNT_ID)
            )
            user_available = ZERO
            user_locked = ZERO
            user_count = 0
            for row in user_rows:
                user_available += Decimal(row.available)
                user_locked += Decimal(row.locked)
                if Decimal(row.available) + Decimal(row.locked) > 0:
                    user_count += 1

            platform = WalletBalance.get_or_none(
                (WalletBalance.asset == asset.id) & (WalletBalance.user_id == PLATFORM_ACCOUNT_ID)
            )
            platform_fees = ZERO
            if platform is not None:
                platform_fees = Decimal(platform.available) + Decimal(platform.locked)

            expected = deposits - withdrawn
            user_total = user_available + user_locked
            assets.append({
                'asset_id': str(asset.id),
                'symbol': asset.symbol,
                'total_deposits': _as_float(deposits),
                'total_withdrawals': _as_float(withdrawn),
                'pending_withdrawals': _as_float(processing),
                'user_available': _as_float(user_available),
                'user_locked': _as_float(user_locked),
                'user_total': _as_float(user_total),
                'platform_fees': _as_float(platform_fees),
                'expected_balance': _as_float(expected),
                'discrepancy': _as_float(user_total + platform_fees - expected),
                'user_count': user_count,
            })

        return {'success': True, 'assets': assets}

    def _find_user(self, user_identifier: str) -> Profile:
        """Look a user up by user id, falling back to username."""
        try:
            profile = Profile.get_or_none(Profile.user_id == uuid.UUID(user_identifier))
        except ValueError:
            profile = Profile.get_or_none(Profile.username == user_identifier)
        if profile is None:
            raise NotFoundError(f"User not found: {user_identifier}")
        return profile

    def adjust_trading_balance(
        self,
        admin_id: Optional[uuid.UUID],
        admin_label: str,
        user_identifier: Optional[str],
        asset_symbol: Optional[str],
        amount: Any,
        reason: Optional[str],
        related_tx_hash: Optional[str] = None,
        ledger_only: bool = False,
    ) -> Dict[str, Any]:
        """
        Credit (positive amount) or debit (negative amount) a user's available trading balance.

        The change is written as a ``RECONCILIATION`` ledger entry, so the
        next reconciliation run reports it as ``recovered``. With
        ``ledger_only`` the balance is left as is and only the ledger row is
        written, which closes a drift of the same amount.

        Args:
            admin_id: Acting admin (None for the service role)
            admin_label: Admin email or role, kept in the ledger notes
            user_identifier: User id or username
            asset_symbol: Asset symbol, case-insensitive
            amount: Signed amount
            reason: Audit reason
            related_tx_hash: Optional on-chain reference
            ledger_only: Backfill the ledger without changing the balance

        Raises:
            ValidationError: Missing fields or zero amount
            NotFoundError: Unknown user or asset
            InsufficientBalanceError: Debit exceeds the available balance
        """
        if not user_identifier or not asset_symbol or amount in (None, '') or not reason:
            raise ValidationError("Missing required fields: user_identifier, asset_symbol, amount, reason")
        value = ledger.round_amount(amount)
        if value == 0:
            raise ValidationError("Amount cannot be zero")

        profile = self._find_user(user_identifier)
        symbol = asset_symbol.upper()
        asset = Asset.get_or_none(Asset.symbol == symbol)
        if asset is None:
            raise NotFoundError(f"Asset not found: {asset_symbol}")

        username = profile.username or 'unknown'
        logger.info(f"[admin-adjust-trading-balance] {admin_label}: {value} {symbol} for {username} ({reason})")

        notes = f"Admin adjustment by {admin_label}: {reason}"
        with db.atomic():
            if ledger_only:
                entry = ledger.record_ledger_correction(
                    profile.user_id, asset, value,
                    reference_type='admin_adjustment', reference_id=related_tx_hash, notes=notes,
                )
                after = before = Decimal(entry.balance_available_after)
            else:
                entry = ledger.record_trading_entry(
                    profile.user_id, asset, value, 0, ledger.ENTRY_RECONCILIATION,
                    reference_type='admin_adjustment', reference_id=related_tx_hash, notes=notes,
                )
                after = Decimal(entry.balance_available_after)
                before = after - value

            if ledger_only:
                summary = f"Recorded {value.normalize():f} {symbol} ledger correction for {username}"
            elif value > 0:
                summary = f"Credited {value.normalize():f} {symbol} to {username}"
            else:
                summary = f"Debited {abs(value).normalize():f} {symbol} from {username}"
            AdminNotification.create(
                type='balance_adjustment',
                priority='high',
                title=f"Balance Adjustment: {username}",
                message=f"{summary}. Reason: {reason}",
            )
            AdminActionLog.create(
                admin_user_id=admin_id,
                action_type='trading_balance_adjustment',
                target_table='wallet_balances',
                target_id=str(profile.user_id),
                details={
                    'admin': admin_label,
                    'asset_symbol': symbol,
                    'amount': str(value),
                    'before_balance': str(before),
                    'after_balance': str(after),
                    'reason': reason,
                    'related_tx_hash': related_tx_hash,
                    'ledger_only': ledger_only,
                },
            )

        return {
            'success': True,
            'adjustment': {
                'user_id': str(profile.user_id),
                'username': username,
                'asset': symbol,
                'amount': float(value),
                'before_balance': _as_float(before),
                'after_balance': _as_float(after),
                'reason': reason,
                'ledger_only': ledger_only,
            },
        }
