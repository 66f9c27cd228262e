"""Database models for the edge functions.

Table and column names follow the platform schema so the same rows can be
read by the web client's query builder.
"""

import json
import uuid
from decimal import Decimal

from peewee import (
    BooleanField,
    CharField,
    DatabaseProxy,
    DateField,
    DateTimeField,
    DecimalField,
    ForeignKeyField,
    IntegerField,
    Model,
    TextField,
    UUIDField,
)

from ismart_edge.core.utils.time_utils import utcnow

# Bound by DatabaseHandler.initialize_database
db = DatabaseProxy()

# Account that collects trading fees; excluded from user-level checks
PLATFORM_ACCOUNT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

ZERO = Decimal("0")


def AmountField(**kwargs):
    """Decimal column used for every token, BSK and INR amount."""
    kwargs.setdefault('default', ZERO)
    return DecimalField(max_digits=36, decimal_places=8, auto_round=True, **kwargs)


class JSONField(TextField):
    """JSON stored as text, portable across SQLite and PostgreSQL."""

    def db_value(self, value):
        if value is None:
            return None
        return json.dumps(value, default=str)

    def python_value(self, value):
        if value is None:
            return None
        return json.loads(value)


def lock_rows(query):
    """Add FOR UPDATE to a select when the bound database supports row locks."""
    if getattr(db.obj, 'for_update', False):
        return query.for_update()
    return query


class BaseModel(Model):
    class Meta:
        database = db


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(unique=True, index=True)
    username = CharField(max_length=100, null=True)
    email = CharField(max_length=255, null=True)
    wallet_address = CharField(max_length=42, null=True)
    bsc_wallet_address = CharField(max_length=42, null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'profiles'


class UserRole(BaseModel):
    user_id = UUIDField(index=True)
    role = CharField(max_length=32)

    class Meta:
        table_name = 'user_roles'
        indexes = (
            (('user_id', 'role'), True),
        )


class KycProfile(BaseModel):
    user_id = UUIDField(unique=True, index=True)
    status = CharField(max_length=20, default='pending')  # pending / approved / rejected
    level = CharField(max_length=10, default='L1')
    submitted_at = DateTimeField(default=utcnow)
    reviewed_at = DateTimeField(null=True)

    class Meta:
        table_name = 'kyc_profiles'


class UserWalletAddress(BaseModel):
    user_id = UUIDField(index=True)
    address = CharField(max_length=42)
    is_primary = BooleanField(default=False)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'wallets_user'


# ---------------------------------------------------------------------------
# Trading balances
# ---------------------------------------------------------------------------

class Asset(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    symbol = CharField(max_length=20, index=True)
    name = CharField(max_length=100)
    network = CharField(max_length=20, default='BEP20')
    contract_address = CharField(max_length=42, null=True)  # None = native BNB
    decimals = IntegerField(default=18)
    is_active = BooleanField(default=True)
    trading_enabled = BooleanField(default=True)

    class Meta:
        table_name = 'assets'


class WalletBalance(BaseModel):
    user_id = UUIDField(index=True)
    asset = ForeignKeyField(Asset, backref='balances', column_name='asset_id')
    available = AmountField()
    locked = AmountField()
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'wallet_balances'
        indexes = (
            (('user_id', 'asset'), True),
        )


class TradingLedgerEntry(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    asset_symbol = CharField(max_length=20, index=True)
    delta_available = AmountField()
    delta_locked = AmountField()
    balance_available_after = AmountField()
    balance_locked_after = AmountField()
    entry_type = CharField(max_length=32, index=True)
    reference_type = CharField(max_length=64, null=True)
    reference_id = CharField(max_length=64, null=True)
    notes = TextField(null=True)
    created_at = DateTimeField(default=utcnow, index=True)

    class Meta:
        table_name = 'trading_balance_ledger'


class CustodialDeposit(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    asset = ForeignKeyField(Asset, backref='deposits', column_name='asset_id')
    tx_hash = CharField(max_length=80, unique=True)
    from_address = CharField(max_length=42, null=True)
    amount = AmountField()
    status = CharField(max_length=20, default='pending')  # pending / confirmed / credited
    created_at = DateTimeField(default=utcnow)
    credited_at = DateTimeField(null=True)

    class Meta:
        table_name = 'custodial_deposits'


class InternalBalanceTransfer(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    asset = ForeignKeyField(Asset, column_name='asset_id')
    asset_symbol = CharField(max_length=20)
    amount = AmountField()
    direction = CharField(max_length=20)  # to_trading / from_trading
    status = CharField(max_length=20, default='completed')
    tx_hash = CharField(max_length=80, null=True, index=True)
    notes = TextField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'internal_balance_transfers'


class Withdrawal(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    asset = ForeignKeyField(Asset, backref='withdrawals', column_name='asset_id')
    amount = AmountField()
    fee = AmountField()
    net_amount = AmountField()
    to_address = CharField(max_length=42)
    network = CharField(max_length=20, default='BEP20')
    status = CharField(max_length=20, default='processing')  # processing / sending / submitted / completed / failed
    tx_hash = CharField(max_length=80, null=True)
    failure_reason = TextField(null=True)
    created_at = DateTimeField(default=utcnow)
    approved_at = DateTimeField(null=True)

    class Meta:
        table_name = 'withdrawals'


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

class AdminNotification(BaseModel):
    type = CharField(max_length=64)
    priority = CharField(max_length=20, default='normal')
    title = CharField(max_length=255)
    message = TextField()
    is_read = BooleanField(default=False)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'admin_notifications'


class AdminActionLog(BaseModel):
    admin_user_id = UUIDField(null=True)
    action_type = CharField(max_length=64)
    target_table = CharField(max_length=64, null=True)
    target_id = CharField(max_length=64, null=True)
    details = JSONField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'admin_actions_log'


class SecurityAuditLog(BaseModel):
    event_type = CharField(max_length=64, index=True)
    severity = CharField(max_length=20)
    source = CharField(max_length=64)
    details = JSONField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'security_audit_log'


class SystemSetting(BaseModel):
    key = CharField(max_length=100, primary_key=True)
    value = JSONField(null=True)
    description = TextField(null=True)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'system_settings'


class ReconciliationRun(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    triggered_by = UUIDField(null=True)
    action = CharField(max_length=32)
    checked_pairs = IntegerField(default=0)
    discrepancy_count = IntegerField(default=0)
    total_abs_drift = AmountField()
    trading_halted = BooleanField(default=False)
    details = JSONField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'reconciliation_runs'


# ---------------------------------------------------------------------------
# BSK balances
# ---------------------------------------------------------------------------

class UserBskBalance(BaseModel):
    user_id = UUIDField(unique=True, index=True)
    holding_balance = AmountField()
    withdrawable_balance = AmountField()
    total_earned_holding = AmountField()
    total_earned_withdrawable = AmountField()
    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'user_bsk_balances'


class BskLedgerEntry(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    idempotency_key = CharField(max_length=255, unique=True)
    tx_type = CharField(max_length=20)  # credit / debit / transfer
    tx_subtype = CharField(max_length=64)
    balance_type = CharField(max_length=20)  # holding / withdrawable
    amount_bsk = AmountField()
    holding_after = AmountField()
    withdrawable_after = AmountField()
    notes = TextField(null=True)
    meta = JSONField(null=True)
    created_at = DateTimeField(default=utcnow, index=True)

    class Meta:
        table_name = 'unified_bsk_ledger'


class BskRate(BaseModel):
    rate_inr_per_bsk = DecimalField(max_digits=20, decimal_places=8)
    created_at = DateTimeField(default=utcnow, index=True)

    class Meta:
        table_name = 'bsk_rates'


# ---------------------------------------------------------------------------
# BSK loans
# ---------------------------------------------------------------------------

class BskLoanSettings(BaseModel):
    system_enabled = BooleanField(default=True)
    min_amount_inr = AmountField(default=Decimal("100"))
    max_amount_inr = AmountField(default=Decimal("25000"))
    default_tenor_weeks = IntegerField(default=16)
    default_interest_rate_weekly = AmountField()
    interest_type = CharField(max_length=20, default='flat')
    origination_fee_percent = AmountField(default=Decimal("3"))
    late_fee_percent = AmountField(default=Decimal("1"))
    grace_period_days = IntegerField(default=3)
    max_concurrent_loans_per_user = IntegerField(default=1)
    min_account_age_days = IntegerField(default=0)
    kyc_required = BooleanField(default=True)
    region_restrictions = JSONField(default=list)
    schedule_denomination = CharField(max_length=20, default='fixed_bsk')  # fixed_bsk / inr_pegged
    per_user_exposure_cap_inr = DecimalField(max_digits=36, decimal_places=8, null=True)
    prepayment_allowed = BooleanField(default=True)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'bsk_loan_settings'


class BskLoan(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    loan_number = CharField(max_length=32, unique=True)
    user_id = UUIDField(index=True)
    amount_inr = AmountField()
    principal_bsk = AmountField()
    origination_fee_percent = AmountField()
    origination_fee_bsk = AmountField()
    net_disbursed_bsk = AmountField()
    interest_rate_weekly = AmountField()
    interest_type = CharField(max_length=20, default='flat')
    tenor_weeks = IntegerField()
    total_due_bsk = AmountField()
    paid_bsk = AmountField()
    outstanding_bsk = AmountField()
    disbursal_rate_snapshot = DecimalField(max_digits=20, decimal_places=8)
    schedule_denomination = CharField(max_length=20, default='fixed_bsk')
    late_fee_percent = AmountField()
    grace_period_days = IntegerField(default=3)
    region = CharField(max_length=8, default='IN')
    status = CharField(max_length=20, default='pending', index=True)
    policy_snapshot = JSONField(null=True)
    admin_notes = TextField(null=True)
    next_due_date = DateField(null=True)
    applied_at = DateTimeField(default=utcnow)
    approved_at = DateTimeField(null=True)
    approved_by = UUIDField(null=True)
    disbursed_at = DateTimeField(null=True)
    closed_at = DateTimeField(null=True)
    prepaid_at = DateTimeField(null=True)

    class Meta:
        table_name = 'bsk_loans'


class BskLoanInstallment(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    loan = ForeignKeyField(BskLoan, backref='installments', column_name='loan_id')
    installment_number = IntegerField()
    due_date = DateField(index=True)
    emi_bsk = DecimalField(max_digits=36, decimal_places=8, null=True)
    emi_inr = DecimalField(max_digits=36, decimal_places=8, null=True)
    principal_bsk = AmountField()
    interest_bsk = AmountField()
    late_fee_bsk = AmountField()
    total_due_bsk = AmountField()
    paid_bsk = AmountField()
    payment_rate_snapshot = DecimalField(max_digits=20, decimal_places=8, null=True)
    payment_method = CharField(max_length=20, null=True)
    status = CharField(max_length=20, default='due', index=True)  # due / overdue / paid
    retry_count = IntegerField(default=0)
    auto_debit_attempted_at = DateTimeField(null=True)
    auto_debit_failed_reason = TextField(null=True)
    paid_at = DateTimeField(null=True)

    class Meta:
        table_name = 'bsk_loan_installments'


class BskLoanLedger(BaseModel):
    user_id = UUIDField(index=True)
    loan = ForeignKeyField(BskLoan, backref='ledger', column_name='loan_id')
    installment = ForeignKeyField(BskLoanInstallment, null=True, column_name='installment_id')
    transaction_type = CharField(max_length=32)
    amount_bsk = AmountField()
    amount_inr = AmountField()
    rate_snapshot = DecimalField(max_digits=20, decimal_places=8, null=True)
    balance_type = CharField(max_length=20)
    direction = CharField(max_length=10)  # credit / debit
    reference_id = CharField(max_length=64, null=True)
    notes = TextField(null=True)
    processed_by = UUIDField(null=True)
    idempotency_key = CharField(max_length=255, null=True)
    metadata = JSONField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'bsk_loan_ledger'


class BskLoanPrepayment(BaseModel):
    loan = ForeignKeyField(BskLoan, column_name='loan_id')
    user_id = UUIDField()
    prepayment_amount_bsk = AmountField()
    outstanding_before_bsk = AmountField()
    discount_applied_bsk = AmountField()
    installments_cleared = IntegerField(default=0)
    is_foreclosure = BooleanField(default=False)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'bsk_loan_prepayments'


class BskLoanAutoDebitLog(BaseModel):
    batch_id = UUIDField(index=True)
    installment = ForeignKeyField(BskLoanInstallment, column_name='installment_id')
    loan = ForeignKeyField(BskLoan, column_name='loan_id')
    user_id = UUIDField()
    scheduled_date = DateField()
    amount_bsk = AmountField()
    status = CharField(max_length=32)  # success / insufficient_balance / error
    error_message = TextField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'bsk_loan_auto_debit_log'


# ---------------------------------------------------------------------------
# Ad mining
# ---------------------------------------------------------------------------

class Ad(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    title = CharField(max_length=255)
    target_url = CharField(max_length=512, default='')
    status = CharField(max_length=20, default='active')
    start_at = DateTimeField(null=True)
    end_at = DateTimeField(null=True)
    required_view_time_seconds = IntegerField(default=10)
    reward_bsk = AmountField()
    max_impressions_per_user_per_day = IntegerField(null=True)
    created_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'ads'


class AdClick(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    ad = ForeignKeyField(Ad, backref='clicks', column_name='ad_id')
    user_id = UUIDField(index=True)
    started_at = DateTimeField(default=utcnow, index=True)
    completed_at = DateTimeField(null=True)
    rewarded = BooleanField(default=False)
    reward_bsk = AmountField()
    subscription_tier = CharField(max_length=64, null=True)
    notes = TextField(null=True)

    class Meta:
        table_name = 'ad_clicks'


class AdMiningSettings(BaseModel):
    free_daily_enabled = BooleanField(default=True)
    free_daily_reward_bsk = AmountField(default=Decimal("1"))
    max_free_per_day = IntegerField(default=1)
    max_subscription_payout_per_day_per_tier = IntegerField(default=1)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'ad_mining_settings'


class AdUserSubscription(BaseModel):
    id = UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = UUIDField(index=True)
    tier_id = CharField(max_length=64)
    purchased_bsk = AmountField()
    daily_bsk = AmountField()
    days_total = IntegerField(default=100)
    start_date = DateField()
    end_date = DateField()
    active_until = DateTimeField()
    status = CharField(max_length=20, default='active', index=True)
    total_earned_bsk = AmountField()
    total_missed_days = IntegerField(default=0)
    completion_bonus_bsk = AmountField()
    completion_bonus_credited_at = DateTimeField(null=True)
    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'ad_user_subscriptions'


class UserDailyAdView(BaseModel):
    user_id = UUIDField(index=True)
    date_key = CharField(max_length=10, index=True)
    free_views_used = IntegerField(default=0)
    subscription_views_used = IntegerField(default=0)
    total_bsk_earned = AmountField()
    last_view_at = DateTimeField(null=True)
    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    class Meta:
        table_name = 'user_daily_ad_views'
        indexes = (
            (('user_id', 'date_key'), True),
        )


ALL_MODELS = [
    Profile, UserRole, KycProfile, UserWalletAddress,
    Asset, WalletBalance, TradingLedgerEntry, CustodialDeposit,
    InternalBalanceTransfer, Withdrawal,
    AdminNotification, AdminActionLog, SecurityAuditLog, SystemSetting, ReconciliationRun,
    UserBskBalance, BskLedgerEntry, BskRate,
    BskLoanSettings, BskLoan, BskLoanInstallment, BskLoanLedger,
    BskLoanPrepayment, BskLoanAutoDebitLog,
    Ad, AdClick, AdMiningSettings, AdUserSubscription, UserDailyAdView,
]
