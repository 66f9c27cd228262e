"""
On-chain withdrawal processing.

Withdrawals are created in status ``processing`` after the trading balance
has been debited (see ``transfer_service``). This service sends them from
the hot wallet and refunds the trading balance when a send fails.

Status flow: ``processing`` -> ``sending`` (claimed by a run) ->
``submitted`` (broadcast, ``tx_hash`` stored) -> ``completed`` or ``failed``.
Once a transaction has been broadcast it is only refunded on a reverted
receipt; a missing receipt leaves the row ``submitted`` for the next run.
"""

import logging
import uuid
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from peewee import fn

from ismart_edge.core import ledger
from ismart_edge.core.blockchain.bsc_client import BscClient
from ismart_edge.core.config_loader import load_secret
from ismart_edge.core.errors import ChainError, ConfigurationError, ConflictError, NotFoundError, ServiceError
from ismart_edge.core.models import (
    AdminNotification,
    Asset,
    SecurityAuditLog,
    SystemSetting,
    Withdrawal,
    ZERO,
    db,
    lock_rows,
)
from ismart_edge.core.utils.time_utils import today_utc, utcnow

logger = logging.getLogger(__name__)

TAG = "[process-pending-withdrawals]"

WITHDRAWALS_FROZEN_KEY = 'withdrawals_frozen'

# Statuses that count toward daily caps
OUTGOING_STATUSES = ('sending', 'submitted', 'completed')


def refund_failed_withdrawal(withdrawal_id: uuid.UUID, reason: str) -> Dict[str, Any]:
    """
    Mark a withdrawal failed and credit its amount back to the trading balance.

    Runs in one transaction. Refunding an already failed withdrawal is a no-op.

    Raises:
        NotFoundError: Unknown withdrawal
        ConflictError: Withdrawal already completed on-chain
    """
    with db.atomic():
        withdrawal = lock_rows(
            Withdrawal.select().where(Withdrawal.id == withdrawal_id)
        ).first()
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        if withdrawal.status == 'failed':
            return {'success': True, 'status': 'already_refunded'}
        if withdrawal.status == 'completed':
            raise ConflictError(f"Withdrawal {withdrawal_id} is already completed")

        asset = Asset.get_by_id(withdrawal.asset_id)
        amount = Decimal(withdrawal.amount)
        ledger.record_trading_entry(
            withdrawal.user_id, asset, amount, 0, ledger.ENTRY_WITHDRAWAL_REFUND,
            reference_type='withdrawal_refund',
            reference_id=withdrawal.id,
            notes=f"Refund of failed withdrawal: {reason}",
        )
        withdrawal.status = 'failed'
        withdrawal.failure_reason = reason
        withdrawal.save()

    logger.info(f"Refunded {amount} {asset.symbol} for failed withdrawal {withdrawal_id}")
    return {'success': True, 'status': 'refunded', 'amount': float(amount)}


def validate_withdrawal_request(
    withdrawal: Withdrawal,
    daily_user_cap: Optional[Decimal] = None,
    daily_global_cap: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """
    Circuit-breaker check run right before a withdrawal is broadcast.

    Blocks when withdrawals are frozen (``withdrawals_frozen`` system
    setting), when the destination is not an address, or when today's
    outgoing total for the user or the whole platform would pass its cap.
    Amounts are summed across assets 1:1.

    Returns:
        ``{"valid": True}`` or ``{"valid": False, "reason": ...}``
    """
    frozen = SystemSetting.get_or_none(SystemSetting.key == WITHDRAWALS_FROZEN_KEY)
    if frozen is not None and frozen.value:
        return {'valid': False, 'reason': 'Withdrawals are globally frozen'}

    if not BscClient.is_address(withdrawal.to_address):
        return {'valid': False, 'reason': 'Invalid destination address'}

    amount = Decimal(withdrawal.amount)
    day_start = datetime.combine(today_utc(), time.min)
    sent_today = (
        Withdrawal.select(fn.COALESCE(fn.SUM(Withdrawal.amount), 0))
        .where(
            (Withdrawal.status.in_(OUTGOING_STATUSES))
            & (Withdrawal.created_at >= day_start)
            & (Withdrawal.id != withdrawal.id)
        )
    )

    if daily_user_cap is not None:
        user_total = Decimal(str(sent_today.where(Withdrawal.user_id == withdrawal.user_id).scalar() or 0))
        if user_total + amount > daily_user_cap:
            return {'valid': False, 'reason': f"Daily withdrawal limit of {daily_user_cap} exceeded"}

    if daily_global_cap is not None:
        global_total = Decimal(str(sent_today.scalar() or 0))
        if global_total + amount > daily_global_cap:
            return {'valid': False, 'reason': f"Platform daily withdrawal cap of {daily_global_cap} reached"}

    return {'valid': True}


def _notify(type_: str, priority: str, title: str, message: str):
    AdminNotification.create(type=type_, priority=priority, title=title, message=message)


def _audit(event_type: str, severity: str, **details):
    SecurityAuditLog.create(
        event_type=event_type,
        severity=severity,
        source='process-pending-withdrawals',
        details=details,
    )


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


class WithdrawalService:
    """Service for sending queued withdrawals from the hot wallet."""

    def __init__(self, bsc_client: BscClient, config: Optional[Dict[str, Any]] = None):
        """
        Initialize withdrawal service.

        Args:
            bsc_client: Chain client
            config: Full application config (``withdrawals`` and ``hot_wallet`` sections)
        """
        self.bsc_client = bsc_client
        self.config = config or {}
        settings = self.config.get('withdrawals', {})
        self.batch_size = int(settings.get('batch_size', 10))
        self.low_gas_warn = Decimal(str(settings.get('low_gas_warn_bnb', 0.05)))
        self.low_gas_abort = Decimal(str(settings.get('low_gas_abort_bnb', 0.005)))
        self.outflow_cap = Decimal(str(settings.get('per_run_outflow_cap', 10000)))
        self.daily_user_cap = _optional_decimal(settings.get('daily_user_cap'))
        self.daily_global_cap = _optional_decimal(settings.get('daily_global_cap'))
        self.receipt_timeout = float(settings.get('receipt_timeout_seconds', 120))

    def _hot_wallet_key(self) -> str:
        try:
            return load_secret(self.config, 'hot_wallet', 'private_key_env')
        except ValueError as e:
            logger.error(f"{TAG} {e}")
            raise ConfigurationError("Hot wallet not configured")

    def _check_gas(self, hot_address: str, pending_count: int) -> Decimal:
        """Abort below the critical BNB balance, notify admins below the warning level."""
        bnb = self.bsc_client.get_native_balance(hot_address)
        logger.info(f"{TAG} BNB gas balance: {bnb}")

        if bnb < self.low_gas_abort:
            logger.error(f"{TAG} CRITICAL: BNB balance {bnb} below abort threshold. Halting.")
            _audit(
                'LOW_GAS_CRITICAL', 'critical',
                bnb_balance=float(bnb), threshold=float(self.low_gas_abort), pending_count=pending_count,
            )
            _notify(
                'hot_wallet_gas', 'critical',
                'Hot Wallet Gas CRITICAL: Withdrawals Halted',
                f"BNB balance is {bnb:.6f} BNB (below {self.low_gas_abort}). "
                f"{pending_count} withdrawals are on hold. Refuel immediately.",
            )
            raise ServiceError(
                "Insufficient gas, withdrawals halted",
                status_code=503,
                bnb_balance=float(bnb),
            )

        if bnb < self.low_gas_warn:
            logger.warning(f"{TAG} LOW_GAS_ALERT: BNB balance {bnb}")
            _audit('LOW_GAS_WARNING', 'high', bnb_balance=float(bnb), threshold=float(self.low_gas_warn))
            _notify(
                'hot_wallet_gas', 'high',
                'Hot Wallet Gas Low: Refuel Soon',
                f"BNB balance is {bnb:.6f} BNB. Please refuel to avoid disruptions.",
            )
        return bnb

    def _claim(self, withdrawal: Withdrawal) -> bool:
        """Move a queued row to ``sending``; False if another run got it first."""
        claimed = Withdrawal.update(status='sending').where(
            (Withdrawal.id == withdrawal.id)
            & (Withdrawal.status == 'processing')
            & (Withdrawal.tx_hash.is_null())
        ).execute()
        return claimed == 1

    def _release(self, withdrawal: Withdrawal):
        Withdrawal.update(status='processing').where(
            (Withdrawal.id == withdrawal.id) & (Withdrawal.status == 'sending')
        ).execute()

    def _refund(self, withdrawal_id: uuid.UUID, reason: str) -> bool:
        try:
            refund_failed_withdrawal(withdrawal_id, reason)
        except ServiceError as e:
            logger.critical(f"{TAG} CRITICAL: Refund failed for {withdrawal_id}: {e.message}")
            return False
        return True

    def _complete(self, withdrawal_id: uuid.UUID, tx_hash: str):
        Withdrawal.update(status='completed', tx_hash=tx_hash, approved_at=utcnow()).where(
            Withdrawal.id == withdrawal_id
        ).execute()

    def _settle(self, withdrawal: Withdrawal, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """Resolve a broadcast withdrawal from its receipt."""
        try:
            mined = self.bsc_client.get_receipt_status(tx_hash, timeout=timeout)
        except ChainError as e:
            logger.warning(f"{TAG} Receipt lookup failed for {withdrawal.id} ({tx_hash}): {e.message}")
            mined = None

        if mined is None:
            logger.warning(f"{TAG} Withdrawal {withdrawal.id} not confirmed yet: {tx_hash}")
            return {'id': str(withdrawal.id), 'status': 'submitted', 'tx_hash': tx_hash}

        if mined:
            self._complete(withdrawal.id, tx_hash)
            logger.info(f"{TAG} Completed withdrawal {withdrawal.id}: {tx_hash}")
            return {'id': str(withdrawal.id), 'status': 'completed', 'tx_hash': tx_hash}

        reason = f"Transaction reverted: {tx_hash}"
        logger.error(f"{TAG} {reason} (withdrawal {withdrawal.id})")
        refunded = self._refund(withdrawal.id, reason)
        return {'id': str(withdrawal.id), 'status': 'error', 'error': reason, 'refunded': refunded}

    def confirm_submitted(self) -> List[Dict[str, Any]]:
        """Check receipts of withdrawals broadcast by earlier runs."""
        submitted = list(
            Withdrawal.select()
            .where((Withdrawal.status == 'submitted') & (Withdrawal.tx_hash.is_null(False)))
            .order_by(Withdrawal.created_at)
        )
        results = [self._settle(withdrawal, withdrawal.tx_hash, timeout=0) for withdrawal in submitted]
        if results:
            logger.info(f"{TAG} Checked {len(results)} submitted withdrawals")
        return results

    def process_pending_withdrawals(self) -> Dict[str, Any]:
        """
        Send up to ``batch_size`` queued withdrawals.

        Withdrawals broadcast by earlier runs are confirmed first. Nonces are
        assigned locally from the pending nonce so a batch can be sent back
        to back. Sending stops for the run once the cumulative outflow would
        exceed the per-run cap; the rest wait for the next run.

        Returns:
            Summary with per-withdrawal results

        Raises:
            ConfigurationError: Hot wallet key not set
            ServiceError: (503) hot wallet gas below the abort threshold
        """
        private_key = self._hot_wallet_key()

        confirmed = self.confirm_submitted()

        pending = list(
            Withdrawal.select(Withdrawal, Asset)
            .join(Asset)
            .where((Withdrawal.status == 'processing') & (Withdrawal.tx_hash.is_null()))
            .order_by(Withdrawal.created_at)
            .limit(self.batch_size)
        )
        if not pending:
            result = {'success': True, 'processed': 0, 'total': 0, 'message': 'No pending withdrawals'}
            if confirmed:
                result['confirmed'] = confirmed
            return result

        logger.info(f"{TAG} Processing {len(pending)} withdrawals")

        hot_address = self.bsc_client.address_of(private_key)
        bnb = self._check_gas(hot_address, len(pending))

        nonce = self.bsc_client.get_pending_nonce(hot_address)
        logger.info(f"{TAG} Hot wallet {hot_address}, starting nonce {nonce}")

        outflow = ZERO
        cap_reached = False
        processed = 0
        results: List[Dict[str, Any]] = []

        for withdrawal in pending:
            if cap_reached:
                results.append({'id': str(withdrawal.id), 'status': 'skipped', 'reason': 'per_run_outflow_cap_reached'})
                continue

            if not self._claim(withdrawal):
                logger.info(f"{TAG} Withdrawal {withdrawal.id} already claimed by another run")
                results.append({'id': str(withdrawal.id), 'status': 'skipped', 'reason': 'already_claimed'})
                continue

            validation = validate_withdrawal_request(withdrawal, self.daily_user_cap, self.daily_global_cap)
            if not validation['valid']:
                reason = validation['reason']
                logger.warning(f"{TAG} Circuit breaker BLOCKED withdrawal {withdrawal.id}: {reason}")
                refunded = self._refund(withdrawal.id, f"Circuit breaker: {reason}")
                _audit(
                    'WITHDRAWAL_CIRCUIT_BREAKER', 'high',
                    withdrawal_id=str(withdrawal.id), user_id=str(withdrawal.user_id),
                    reason=reason, amount=str(withdrawal.amount),
                )
                results.append({'id': str(withdrawal.id), 'status': 'blocked', 'reason': reason, 'refunded': refunded})
                continue

            asset = withdrawal.asset
            net_amount = Decimal(withdrawal.net_amount)

            # Token amounts count 1:1 toward the cap
            if outflow + net_amount > self.outflow_cap:
                logger.warning(
                    f"{TAG} Outflow cap would be exceeded: current={outflow}, this={net_amount}, cap={self.outflow_cap}"
                )
                self._release(withdrawal)
                _audit(
                    'OUTFLOW_CAP_REACHED', 'high',
                    cumulative=float(outflow), this_amount=float(net_amount), cap=float(self.outflow_cap),
                    remaining_count=len(pending) - len(results),
                )
                _notify(
                    'outflow_cap', 'high',
                    'Per-Run Outflow Cap Reached',
                    f"Cumulative outflow hit {outflow} (cap: {self.outflow_cap}). "
                    f"Remaining withdrawals deferred to next run.",
                )
                cap_reached = True
                results.append({'id': str(withdrawal.id), 'status': 'skipped', 'reason': 'per_run_outflow_cap_reached'})
                continue

            logger.info(
                f"{TAG} Sending {net_amount} {asset.symbol} to {withdrawal.to_address} (nonce: {nonce})"
            )
            try:
                if asset.contract_address:
                    tx_hash = self.bsc_client.send_token(
                        private_key, asset.contract_address, withdrawal.to_address,
                        net_amount, asset.decimals or 18, nonce,
                    )
                else:
                    tx_hash = self.bsc_client.send_native(private_key, withdrawal.to_address, net_amount, nonce)
            except ChainError as e:
                # Nothing was broadcast, so the debit can be returned
                logger.error(f"{TAG} Error processing withdrawal {withdrawal.id}: {e.message}")
                refunded = self._refund(withdrawal.id, e.message)
                results.append({'id': str(withdrawal.id), 'status': 'error', 'error': e.message, 'refunded': refunded})

                lowered = e.message.lower()
                if 'nonce' in lowered or 'replacement' in lowered:
                    nonce = self.bsc_client.get_pending_nonce(hot_address)
                    logger.warning(f"{TAG} Nonce conflict detected, recovered nonce: {nonce}")
                continue

            nonce += 1
            outflow += net_amount
            Withdrawal.update(status='submitted', tx_hash=tx_hash).where(
                Withdrawal.id == withdrawal.id
            ).execute()

            result = self._settle(withdrawal, tx_hash, timeout=self.receipt_timeout)
            if result['status'] == 'completed':
                processed += 1
                result['symbol'] = asset.symbol
            results.append(result)

        summary = {
            'success': True,
            'processed': processed,
            'total': len(pending),
            'results': results,
            'gas_balance_bnb': float(bnb),
            'cumulative_outflow': float(outflow),
        }
        if confirmed:
            summary['confirmed'] = confirmed
        return summary
