"""
BSK loan service.

Loans are taken in INR and disbursed in BSK at the current rate into the
user's *holding* balance. Repayment is weekly (EMI) from the holding balance,
by auto-debit from the withdrawable balance, or in one go (prepayment or
foreclosure). When a loan closes, the remaining holding balance is released
to withdrawable.

Loan lifecycle: pending -> active -> closed, or pending -> written_off.
"""

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from peewee import fn

from ismart_edge.core import ledger
from ismart_edge.core.errors import (
    ConflictError,
    InsufficientBalanceError,
    KycRequiredError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)
from ismart_edge.core.models import (
    BskLedgerEntry,
    BskLoan,
    BskLoanAutoDebitLog,
    BskLoanInstallment,
    BskLoanLedger,
    BskLoanPrepayment,
    BskLoanSettings,
    BskRate,
    KycProfile,
    Profile,
    ZERO,
    db,
    lock_rows,
)
from ismart_edge.core.utils.time_utils import days_between, parse_date, today_utc, utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ('pending', 'approved', 'active', 'in_arrears')
REPAYABLE_STATUSES = ('active', 'in_arrears')
UNPAID_INSTALLMENT_STATUSES = ('due', 'overdue')

PAYMENT_TYPES = ('single_emi', 'prepay_full')
DISBURSE_ACTIONS = ('approve', 'reject')

# Outstanding at or below this closes the loan
CLOSE_TOLERANCE_BSK = Decimal("0.01")

# Settings copied onto each loan at application time
POLICY_FIELDS = (
    'min_amount_inr', 'max_amount_inr', 'default_tenor_weeks', 'default_interest_rate_weekly',
    'interest_type', 'origination_fee_percent', 'late_fee_percent', 'grace_period_days',
    'max_concurrent_loans_per_user', 'min_account_age_days', 'kyc_required',
    'region_restrictions', 'schedule_denomination', 'per_user_exposure_cap_inr',
    'prepayment_allowed',
)


def _fmt(value: Decimal, places: int = 4) -> str:
    return f"{Decimal(value):.{places}f}"


def _num(value) -> Optional[float]:
    return None if value is None else float(value)


def get_current_rate() -> Optional[Decimal]:
    """Latest INR per BSK rate, None when no rate is published."""
    rate = BskRate.select().order_by(BskRate.created_at.desc(), BskRate.id.desc()).first()
    if rate is None:
        return None
    return Decimal(rate.rate_inr_per_bsk)


def get_loan_settings() -> BskLoanSettings:
    """Current loan settings (an unsaved default row when none are stored)."""
    settings = BskLoanSettings.select().order_by(BskLoanSettings.id.desc()).first()
    if settings is None:
        logger.warning("No bsk_loan_settings row found, using defaults")
        settings = BskLoanSettings()
    return settings


def generate_loan_number() -> str:
    return f"BSK{utcnow():%Y%m%d}{uuid.uuid4().hex[:6].upper()}"


def build_schedule(loan: BskLoan, start: date) -> List[Dict[str, Any]]:
    """
    Weekly installment rows for a loan.

    ``fixed_bsk`` schedules split ``total_due_bsk`` evenly with the last
    installment absorbing rounding. ``inr_pegged`` schedules fix the INR
    amount per week; the BSK figure is indicative at the disbursal rate.
    """
    tenor = int(loan.tenor_weeks)
    total_due = Decimal(loan.total_due_bsk)
    principal = Decimal(loan.principal_bsk)
    rate = Decimal(loan.disbursal_rate_snapshot)
    interest_total = max(ZERO, total_due - principal)

    emi_bsk = ledger.round_amount(total_due / tenor)
    emi_interest = ledger.round_amount(interest_total / tenor)
    emi_inr = ledger.round_amount(total_due * rate / tenor)

    rows = []
    for number in range(1, tenor + 1):
        if loan.schedule_denomination == 'fixed_bsk':
            due_bsk = emi_bsk
            if number == tenor:
                due_bsk = total_due - emi_bsk * (tenor - 1)
            installment_inr = None
            installment_bsk = due_bsk
        else:
            installment_inr = emi_inr
            due_bsk = ledger.round_amount(emi_inr / rate)
            installment_bsk = None

        interest = min(emi_interest, due_bsk)
        rows.append({
            'loan': loan.id,
            'installment_number': number,
            'due_date': start + timedelta(weeks=number),
            'emi_bsk': installment_bsk,
            'emi_inr': installment_inr,
            'principal_bsk': due_bsk - interest,
            'interest_bsk': interest,
            'total_due_bsk': due_bsk,
            'status': 'due',
        })
    return rows


def serialize_loan(loan: BskLoan) -> Dict[str, Any]:
    return {
        'id': str(loan.id),
        'loan_number': loan.loan_number,
        'status': loan.status,
        'amount_inr': _num(loan.amount_inr),
        'principal_bsk': _num(loan.principal_bsk),
        'origination_fee_bsk': _num(loan.origination_fee_bsk),
        'net_disbursed_bsk': _num(loan.net_disbursed_bsk),
        'interest_rate_weekly': _num(loan.interest_rate_weekly),
        'tenor_weeks': loan.tenor_weeks,
        'total_due_bsk': _num(loan.total_due_bsk),
        'paid_bsk': _num(loan.paid_bsk),
        'outstanding_bsk': _num(loan.outstanding_bsk),
        'disbursal_rate_snapshot': _num(loan.disbursal_rate_snapshot),
        'schedule_denomination': loan.schedule_denomination,
        'region': loan.region,
        'next_due_date': loan.next_due_date.isoformat() if loan.next_due_date else None,
    }


class LoanService:
    """Service for BSK loan origination, disbursal and repayment."""

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(self, user_id: uuid.UUID, amount_inr: Any, region: Optional[str] = 'IN') -> Dict[str, Any]:
        """
        Apply for a BSK loan.

        Args:
            user_id: Applicant
            amount_inr: Requested amount in INR
            region: Applicant region code

        Returns:
            ``{"success": True, "loan": {...}}`` for the new pending loan

        Raises:
            ValidationError: Any eligibility rule fails
            KycRequiredError: KYC is required and not approved
        """
        region = (region or 'IN').upper()
        try:
            amount = ledger.round_amount(amount_inr)
        except ValidationError:
            raise ValidationError("amount_inr must be a number")

        settings = get_loan_settings()

        if not settings.system_enabled:
            raise ValidationError("Loan system is currently disabled")

        min_amount = Decimal(settings.min_amount_inr)
        max_amount = Decimal(settings.max_amount_inr)
        if amount < min_amount or amount > max_amount:
            raise ValidationError(
                f"Loan amount must be between ₹{min_amount.normalize():f} and ₹{max_amount.normalize():f}"
            )

        allowed_regions = [r.upper() for r in (settings.region_restrictions or [])]
        if allowed_regions and region not in allowed_regions:
            raise ValidationError(f"Loans are not available in region {region}")

        if settings.min_account_age_days:
            profile = Profile.get_or_none(Profile.user_id == user_id)
            age_days = days_between(profile.created_at.date(), today_utc()) if profile else 0
            if age_days < settings.min_account_age_days:
                raise ValidationError(
                    f"Account must be at least {settings.min_account_age_days} days old to apply for a loan"
                )

        open_loans = BskLoan.select().where(
            (BskLoan.user_id == user_id) & (BskLoan.status.in_(OPEN_STATUSES))
        )
        if open_loans.count() >= settings.max_concurrent_loans_per_user:
            raise ValidationError(
                f"Maximum {settings.max_concurrent_loans_per_user} active loan(s) allowed per user"
            )

        if settings.per_user_exposure_cap_inr is not None:
            exposure = open_loans.select(fn.SUM(BskLoan.amount_inr)).scalar() or 0
            cap = Decimal(settings.per_user_exposure_cap_inr)
            if ledger.round_amount(exposure) + amount > cap:
                raise ValidationError(f"Loan exceeds your exposure limit of ₹{cap.normalize():f}")

        if settings.kyc_required:
            kyc = KycProfile.get_or_none(KycProfile.user_id == user_id)
            if kyc is None or kyc.status != 'approved':
                raise KycRequiredError()

        rate = get_current_rate()
        if rate is None or rate <= 0:
            raise ValidationError("BSK rate not available. Please try again later.")

        tenor = int(settings.default_tenor_weeks)
        interest_rate = Decimal(settings.default_interest_rate_weekly)
        fee_percent = Decimal(settings.origination_fee_percent)

        principal = ledger.round_amount(amount / rate)
        fee = ledger.round_amount(principal * fee_percent / 100)
        net_disbursed = principal - fee
        total_due = ledger.round_amount(principal * (1 + interest_rate / 100 * tenor))

        policy = {}
        for name in POLICY_FIELDS:
            value = getattr(settings, name)
            policy[name] = float(value) if isinstance(value, Decimal) else value

        loan = BskLoan.create(
            loan_number=generate_loan_number(),
            user_id=user_id,
            amount_inr=amount,
            principal_bsk=principal,
            origination_fee_percent=fee_percent,
            origination_fee_bsk=fee,
            net_disbursed_bsk=net_disbursed,
            interest_rate_weekly=interest_rate,
            interest_type=settings.interest_type,
            tenor_weeks=tenor,
            total_due_bsk=total_due,
            outstanding_bsk=total_due,
            disbursal_rate_snapshot=rate,
            schedule_denomination=settings.schedule_denomination,
            late_fee_percent=settings.late_fee_percent,
            grace_period_days=settings.grace_period_days,
            region=region,
            status='pending',
            policy_snapshot=policy,
        )

        logger.info(
            f"[bsk-loan-apply] Loan {loan.loan_number} created for user {user_id}: "
            f"₹{amount} = {principal} BSK @ {rate}, fee {fee}, total due {total_due}"
        )

        loan_data = serialize_loan(loan)
        loan_data['weekly_emi_bsk'] = float(ledger.round_amount(total_due / tenor))
        return {'success': True, 'loan': loan_data}

    # ------------------------------------------------------------------
    # Disbursal
    # ------------------------------------------------------------------

    def disburse(
        self,
        admin_id: Optional[uuid.UUID],
        loan_id: Any,
        action: str,
        admin_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Approve (and disburse) or reject a pending loan.

        Approval creates the weekly schedule, credits ``net_disbursed_bsk``
        to the borrower's holding balance and activates the loan.
        """
        if action not in DISBURSE_ACTIONS:
            raise ValidationError("action must be 'approve' or 'reject'")

        logger.info(f"[bsk-loan-disburse] {action}: admin {admin_id} processing loan {loan_id}")
        now = utcnow()

        with db.atomic():
            loan = lock_rows(BskLoan.select().where(
                (BskLoan.id == self._parse_id(loan_id)) & (BskLoan.status == 'pending')
            )).first()
            if loan is None:
                raise NotFoundError("Loan not found or not in pending status")

            if action == 'reject':
                loan.status = 'written_off'
                loan.admin_notes = admin_notes
                loan.approved_by = admin_id
                loan.approved_at = now
                loan.save()
                logger.info(f"[bsk-loan-disburse] Loan {loan.loan_number} rejected")
                return {'success': True, 'message': 'Loan rejected successfully'}

            schedule = build_schedule(loan, now.date())
            BskLoanInstallment.insert_many(schedule).execute()

            net_disbursed = Decimal(loan.net_disbursed_bsk)
            rate = Decimal(loan.disbursal_rate_snapshot)
            ledger.record_bsk_transaction(
                loan.user_id,
                f"loan_disbursal_{loan.id}",
                'credit',
                'loan_disbursal',
                'holding',
                net_disbursed,
                notes=f"Loan disbursal: {loan.loan_number}",
                meta={'loan_id': str(loan.id), 'loan_number': loan.loan_number},
            )

            BskLoanLedger.create(
                user_id=loan.user_id,
                loan=loan.id,
                transaction_type='loan_disbursal',
                amount_bsk=net_disbursed,
                amount_inr=loan.amount_inr,
                rate_snapshot=rate,
                balance_type='holding',
                direction='credit',
                reference_id=loan.loan_number,
                notes=f"Loan disbursal: {loan.loan_number}",
                processed_by=admin_id,
                idempotency_key=f"disbursal-{loan.id}",
                metadata={
                    'loan_number': loan.loan_number,
                    'tenor_weeks': loan.tenor_weeks,
                    'interest_rate': float(loan.interest_rate_weekly),
                    'admin_action': 'approve_and_disburse',
                },
            )
            fee = Decimal(loan.origination_fee_bsk)
            if fee > 0:
                BskLoanLedger.create(
                    user_id=loan.user_id,
                    loan=loan.id,
                    transaction_type='origination_fee',
                    amount_bsk=fee,
                    amount_inr=fee * rate,
                    rate_snapshot=rate,
                    balance_type='holding',
                    direction='debit',
                    reference_id=loan.loan_number,
                    notes=f"Origination fee: {Decimal(loan.origination_fee_percent).normalize():f}%",
                    processed_by=admin_id,
                    idempotency_key=f"origination-{loan.id}",
                    metadata={'fee_percent': float(loan.origination_fee_percent)},
                )

            loan.status = 'active'
            loan.admin_notes = admin_notes
            loan.approved_by = admin_id
            loan.approved_at = now
            loan.disbursed_at = now
            loan.next_due_date = schedule[0]['due_date']
            loan.save()

        logger.info(
            f"[bsk-loan-disburse] Loan {loan.loan_number}: {net_disbursed} BSK credited to user {loan.user_id}"
        )

        first = schedule[0]
        return {
            'success': True,
            'message': 'Loan approved and disbursed successfully',
            'loan': {
                'id': str(loan.id),
                'loan_number': loan.loan_number,
                'amount_inr': float(loan.amount_inr),
                'net_disbursed_bsk': float(net_disbursed),
                'installments_created': len(schedule),
                'next_due_date': first['due_date'].isoformat(),
                'weekly_emi_bsk': _num(first['emi_bsk']),
                'weekly_emi_inr': _num(first['emi_inr']),
            },
        }

    # ------------------------------------------------------------------
    # Repayment
    # ------------------------------------------------------------------

    def repay(self, user_id: uuid.UUID, installment_id: Any, payment_type: str = 'single_emi') -> Dict[str, Any]:
        """
        Pay one installment (``single_emi``) or all unpaid ones (``prepay_full``)
        from the holding balance.

        Raises:
            NotFoundError: Installment does not exist
            PermissionDeniedError: Loan belongs to another user
            ConflictError: Installment already paid or loan not repayable
            InsufficientBalanceError: Holding balance too low (with required/available)
        """
        payment_type = payment_type or 'single_emi'
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("payment_type must be 'single_emi' or 'prepay_full'")

        logger.info(f"[bsk-loan-repay] User {user_id} paying installment {installment_id} ({payment_type})")

        with db.atomic():
            installment = lock_rows(BskLoanInstallment.select().where(
                BskLoanInstallment.id == self._parse_id(installment_id)
            )).first()
            if installment is None:
                raise NotFoundError("Installment not found")

            loan = lock_rows(BskLoan.select().where(BskLoan.id == installment.loan_id)).first()
            if loan.user_id != user_id:
                raise PermissionDeniedError("Unauthorized - not your loan")
            if installment.status == 'paid':
                raise ConflictError("Installment already paid")
            if loan.status not in REPAYABLE_STATUSES:
                raise ConflictError(f"Loan is {loan.status} and cannot be repaid")

            current_rate = get_current_rate() or Decimal(loan.disbursal_rate_snapshot)
            unpaid = list(
                BskLoanInstallment.select().where(
                    (BskLoanInstallment.loan == loan.id)
                    & (BskLoanInstallment.status.in_(UNPAID_INSTALLMENT_STATUSES))
                ).order_by(BskLoanInstallment.installment_number)
            )

            if payment_type == 'prepay_full':
                if not (loan.policy_snapshot or {}).get('prepayment_allowed', True):
                    raise ValidationError("Prepayment is not allowed for this loan")
                amount = sum(
                    (Decimal(i.total_due_bsk) - Decimal(i.paid_bsk) for i in unpaid), ZERO
                )
                rate_snapshot = current_rate
            else:
                if loan.schedule_denomination == 'inr_pegged' and installment.emi_inr is not None:
                    amount = Decimal(installment.emi_inr) / current_rate
                    rate_snapshot = current_rate
                else:
                    amount = Decimal(installment.total_due_bsk)
                    rate_snapshot = Decimal(loan.disbursal_rate_snapshot)

                days_late = days_between(installment.due_date, today_utc())
                late_fee_percent = Decimal(loan.late_fee_percent)
                if days_late > loan.grace_period_days and late_fee_percent > 0 and Decimal(installment.late_fee_bsk) == 0:
                    late_fee = ledger.round_amount(amount * late_fee_percent / 100)
                    amount += late_fee
                    installment.late_fee_bsk = late_fee
                    installment.total_due_bsk = Decimal(installment.total_due_bsk) + late_fee
                    logger.info(f"[bsk-loan-repay] Late fee {late_fee} BSK applied ({days_late} days past due)")

            amount = ledger.round_amount(amount)
            if amount <= 0:
                raise ValidationError("Nothing left to pay on this loan")

            holding, _ = ledger.get_bsk_balance(user_id)
            if holding < amount:
                raise InsufficientBalanceError(
                    "Insufficient BSK balance",
                    required=_fmt(amount),
                    available=_fmt(holding),
                )

            key = (
                f"loan_prepayment_{loan.id}" if payment_type == 'prepay_full'
                else f"loan_repayment_{installment.id}"
            )
            ledger.record_bsk_transaction(
                user_id,
                key,
                'debit',
                'loan_prepayment' if payment_type == 'prepay_full' else 'loan_repayment',
                'holding',
                amount,
                notes=(
                    f"Full loan prepayment - Loan #{loan.loan_number}" if payment_type == 'prepay_full'
                    else f"EMI payment #{installment.installment_number} - Loan #{loan.loan_number}"
                ),
                meta={
                    'loan_id': str(loan.id),
                    'loan_number': loan.loan_number,
                    'installment_id': str(installment.id) if payment_type == 'single_emi' else None,
                    'payment_type': payment_type,
                    'rate_snapshot': float(rate_snapshot),
                },
            )

            now = utcnow()
            if payment_type == 'prepay_full':
                outstanding_before = Decimal(loan.outstanding_bsk)
                BskLoanInstallment.update(
                    status='paid',
                    paid_bsk=BskLoanInstallment.total_due_bsk,
                    payment_rate_snapshot=rate_snapshot,
                    payment_method='prepayment',
                    paid_at=now,
                ).where(
                    (BskLoanInstallment.loan == loan.id)
                    & (BskLoanInstallment.status.in_(UNPAID_INSTALLMENT_STATUSES))
                ).execute()
                BskLoanPrepayment.create(
                    loan=loan.id,
                    user_id=user_id,
                    prepayment_amount_bsk=amount,
                    outstanding_before_bsk=outstanding_before,
                    installments_cleared=len(unpaid),
                    is_foreclosure=False,
                )
                loan.prepaid_at = now
            else:
                installment.status = 'paid'
                installment.paid_bsk = amount
                installment.payment_rate_snapshot = rate_snapshot
                installment.payment_method = 'manual'
                installment.paid_at = now
                installment.save()

            closed = self._apply_payment(loan, amount, force_close=payment_type == 'prepay_full')

            BskLoanLedger.create(
                user_id=user_id,
                loan=loan.id,
                installment=installment.id if payment_type == 'single_emi' else None,
                transaction_type='prepayment' if payment_type == 'prepay_full' else 'loan_repayment',
                amount_bsk=amount,
                amount_inr=amount * rate_snapshot,
                rate_snapshot=rate_snapshot,
                balance_type='holding',
                direction='debit',
                reference_id=loan.loan_number,
                notes=(
                    'Full loan prepayment' if payment_type == 'prepay_full'
                    else f"EMI payment #{installment.installment_number}"
                ),
                processed_by=user_id,
                idempotency_key=key,
                metadata={'payment_type': payment_type, 'installment_number': installment.installment_number},
            )

            if closed:
                self._release_holding(loan)

        logger.info(f"[bsk-loan-repay] {amount} BSK paid on loan {loan.loan_number} (closed={closed})")

        return {
            'success': True,
            'message': 'Loan paid in full!' if payment_type == 'prepay_full' else 'EMI payment successful',
            'payment': {
                'amount_bsk': _fmt(amount),
                'amount_inr': _fmt(amount * rate_snapshot, 2),
                'rate_snapshot': float(rate_snapshot),
                'payment_type': payment_type,
                'remaining_balance_bsk': _fmt(loan.outstanding_bsk),
                'loan_closed': closed,
            },
        }

    def foreclose(self, user_id: uuid.UUID, loan_id: Any) -> Dict[str, Any]:
        """
        Settle the whole outstanding amount from the withdrawable balance.

        Raises:
            ConflictError: Already settled (``already_processed``) or loan not open
            InsufficientBalanceError: Withdrawable balance below the outstanding amount
        """
        if not loan_id:
            raise ValidationError("loan_id is required")

        key = f"loan_foreclose_{loan_id}"
        logger.info(f"[bsk-loan-foreclose] User {user_id} requesting foreclosure for loan {loan_id}")

        if BskLedgerEntry.select().where(BskLedgerEntry.idempotency_key == key).exists():
            raise ConflictError(
                "This loan has already been settled. Please refresh the page.",
                already_processed=True,
            )

        with db.atomic():
            loan = lock_rows(BskLoan.select().where(
                (BskLoan.id == self._parse_id(loan_id)) & (BskLoan.user_id == user_id)
            )).first()
            if loan is None:
                raise NotFoundError("Loan not found or does not belong to you")
            if loan.status not in REPAYABLE_STATUSES:
                raise ConflictError(
                    f"Loan is already {loan.status}. Please refresh the page.",
                    already_processed=True,
                )

            outstanding = ledger.round_amount(loan.outstanding_bsk)
            if outstanding <= 0:
                raise ValidationError("No outstanding balance to settle")

            _, withdrawable = ledger.get_bsk_balance(user_id)
            if withdrawable < outstanding:
                raise InsufficientBalanceError(
                    f"Insufficient balance. Required: {_fmt(outstanding, 2)} BSK, "
                    f"Available: {_fmt(withdrawable, 2)} BSK",
                    required=_fmt(outstanding),
                    available=_fmt(withdrawable),
                )

            ledger.record_bsk_transaction(
                user_id,
                key,
                'debit',
                'loan_foreclosure',
                'withdrawable',
                outstanding,
                notes=f"Foreclosure of loan #{loan.loan_number}",
                meta={
                    'loan_id': str(loan.id),
                    'loan_number': loan.loan_number,
                    'original_outstanding': float(outstanding),
                },
            )

            now = utcnow()
            cleared = BskLoanInstallment.update(
                status='paid',
                paid_bsk=BskLoanInstallment.total_due_bsk,
                payment_method='foreclosure',
                paid_at=now,
            ).where(
                (BskLoanInstallment.loan == loan.id)
                & (BskLoanInstallment.status.in_(UNPAID_INSTALLMENT_STATUSES))
            ).execute()

            loan.prepaid_at = now
            loan.admin_notes = f"Foreclosed by user on {now.isoformat()}. Settlement: {outstanding} BSK"
            self._apply_payment(loan, outstanding, force_close=True)

            BskLoanPrepayment.create(
                loan=loan.id,
                user_id=user_id,
                prepayment_amount_bsk=outstanding,
                outstanding_before_bsk=outstanding,
                installments_cleared=cleared,
                is_foreclosure=True,
            )
            BskLoanLedger.create(
                user_id=user_id,
                loan=loan.id,
                transaction_type='foreclosure',
                amount_bsk=outstanding,
                amount_inr=outstanding * Decimal(loan.disbursal_rate_snapshot),
                rate_snapshot=loan.disbursal_rate_snapshot,
                balance_type='withdrawable',
                direction='debit',
                reference_id=loan.loan_number,
                notes='Loan foreclosure',
                processed_by=user_id,
                idempotency_key=key,
            )
            self._release_holding(loan)

        logger.info(f"[bsk-loan-foreclose] Loan {loan.loan_number} foreclosed, {cleared} installments cleared")

        return {
            'success': True,
            'message': 'Loan successfully settled',
            'loan_number': loan.loan_number,
            'original_outstanding': float(outstanding),
            'settlement_amount': float(outstanding),
            'installments_cleared': cleared,
            'new_status': 'closed',
        }

    # ------------------------------------------------------------------
    # Auto-debit
    # ------------------------------------------------------------------

    def auto_debit(self, process_date: Any = None) -> Dict[str, Any]:
        """
        Collect due installments from borrowers' withdrawable balances.

        Every installment with status ``due`` and due date on or before
        ``process_date`` (default today) on an active loan is attempted once.
        Insufficient balance marks the installment ``overdue``. Each attempt
        is written to ``bsk_loan_auto_debit_log`` under one batch id.
        """
        target = parse_date(process_date) if process_date else today_utc()
        if target is None:
            raise ValidationError(f"Invalid process_date: {process_date}")
        batch_id = uuid.uuid4()

        logger.info(f"[bsk-loan-auto-debit] Starting batch {batch_id} for date {target}")

        installments = list(
            BskLoanInstallment.select(BskLoanInstallment, BskLoan)
            .join(BskLoan)
            .where(
                (BskLoanInstallment.due_date <= target)
                & (BskLoanInstallment.status == 'due')
                & (BskLoan.status == 'active')
            )
            .order_by(BskLoanInstallment.due_date, BskLoanInstallment.installment_number)
        )

        result = {
            'success': True,
            'batch_id': str(batch_id),
            'processed': 0,
            'successful': 0,
            'insufficient_balance': 0,
            'errors': 0,
            'details': [],
        }
        if not installments:
            result['message'] = 'No installments due today'
            return result

        for installment in installments:
            loan = installment.loan
            amount = ledger.round_amount(installment.emi_bsk or installment.total_due_bsk)
            status = 'success'
            error_message = None

            try:
                status, error_message = self._auto_debit_installment(installment, loan, amount)
            except ServiceError as e:
                status, error_message = 'error', e.message
                logger.error(f"[bsk-loan-auto-debit] Installment {installment.id} failed: {e.message}")
            except Exception as e:
                status, error_message = 'error', str(e)
                logger.error(f"[bsk-loan-auto-debit] Unexpected error for installment {installment.id}: {e}", exc_info=True)

            if status == 'error':
                BskLoanInstallment.update(
                    auto_debit_attempted_at=utcnow(),
                    auto_debit_failed_reason=error_message,
                    retry_count=BskLoanInstallment.retry_count + 1,
                ).where(BskLoanInstallment.id == installment.id).execute()

            BskLoanAutoDebitLog.create(
                batch_id=batch_id,
                installment=installment.id,
                loan=loan.id,
                user_id=loan.user_id,
                scheduled_date=target,
                amount_bsk=amount,
                status=status,
                error_message=error_message,
            )

            result['processed'] += 1
            if status == 'success':
                result['successful'] += 1
            elif status == 'insufficient_balance':
                result['insufficient_balance'] += 1
            else:
                result['errors'] += 1
            detail = {
                'installment_id': str(installment.id),
                'loan_id': str(loan.id),
                'user_id': str(loan.user_id),
                'status': status,
                'amount_bsk': float(amount),
            }
            if error_message:
                detail['error'] = error_message
            result['details'].append(detail)

        result['failed'] = result['insufficient_balance'] + result['errors']
        result['message'] = f"Processed {result['processed']} installments"
        logger.info(
            f"[bsk-loan-auto-debit] Batch {batch_id} completed: processed={result['processed']} "
            f"successful={result['successful']} failed={result['failed']}"
        )
        return result

    def _auto_debit_installment(self, installment: BskLoanInstallment, loan: BskLoan, amount: Decimal):
        """Attempt one installment. Returns (status, error_message)."""
        with db.atomic():
            now = utcnow()
            _, withdrawable = ledger.get_bsk_balance(loan.user_id)
            if withdrawable < amount:
                message = f"Required: {amount} BSK, Available: {withdrawable} BSK"
                BskLoanInstallment.update(
                    status='overdue',
                    auto_debit_attempted_at=now,
                    auto_debit_failed_reason='Insufficient withdrawable balance',
                    retry_count=BskLoanInstallment.retry_count + 1,
                ).where(BskLoanInstallment.id == installment.id).execute()
                logger.info(f"[bsk-loan-auto-debit] Insufficient balance for user {loan.user_id}: {message}")
                return 'insufficient_balance', message

            key = f"loan_autodebit_{installment.id}"
            ledger.record_bsk_transaction(
                loan.user_id,
                key,
                'debit',
                'loan_auto_debit',
                'withdrawable',
                amount,
                notes=f"Auto-debit EMI #{installment.installment_number} - Loan #{loan.loan_number}",
                meta={'loan_id': str(loan.id), 'installment_id': str(installment.id)},
            )

            installment.status = 'paid'
            installment.paid_bsk = amount
            installment.payment_rate_snapshot = loan.disbursal_rate_snapshot
            installment.payment_method = 'auto_debit'
            installment.auto_debit_attempted_at = now
            installment.auto_debit_failed_reason = None
            installment.paid_at = now
            installment.save()

            # Reload under lock; several installments of one loan may be in this batch
            loan = lock_rows(BskLoan.select().where(BskLoan.id == loan.id)).first()
            closed = self._apply_payment(loan, amount)

            BskLoanLedger.create(
                user_id=loan.user_id,
                loan=loan.id,
                installment=installment.id,
                transaction_type='auto_debit',
                amount_bsk=amount,
                amount_inr=amount * Decimal(loan.disbursal_rate_snapshot),
                rate_snapshot=loan.disbursal_rate_snapshot,
                balance_type='withdrawable',
                direction='debit',
                reference_id=loan.loan_number,
                notes=f"Auto-debit EMI #{installment.installment_number}",
                idempotency_key=key,
            )

            if closed:
                self._release_holding(loan)

        return 'success', None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_id(value: Any) -> uuid.UUID:
        try:
            return uuid.UUID(str(value))
        except ValueError:
            raise NotFoundError(f"Invalid id: {value}")

    def _apply_payment(self, loan: BskLoan, amount: Decimal, force_close: bool = False) -> bool:
        """
        Add a payment to the loan totals and close it when fully paid.

        Returns:
            True if the loan is now closed
        """
        loan.paid_bsk = Decimal(loan.paid_bsk) + amount
        outstanding = Decimal(loan.outstanding_bsk) - amount
        closed = force_close or outstanding <= CLOSE_TOLERANCE_BSK

        if closed:
            loan.outstanding_bsk = ZERO
            loan.status = 'closed'
            loan.closed_at = utcnow()
            loan.next_due_date = None
        else:
            loan.outstanding_bsk = outstanding
            next_due = BskLoanInstallment.select(fn.MIN(BskLoanInstallment.due_date)).where(
                (BskLoanInstallment.loan == loan.id)
                & (BskLoanInstallment.status.in_(UNPAID_INSTALLMENT_STATUSES))
            ).scalar()
            loan.next_due_date = parse_date(next_due)
        loan.save()
        return closed

    def _release_holding(self, loan: BskLoan):
        """Move the borrower's remaining holding balance to withdrawable."""
        holding, _ = ledger.get_bsk_balance(loan.user_id)
        if holding <= 0:
            return
        ledger.record_bsk_transaction(
            loan.user_id,
            f"holding_to_withdrawable_{loan.id}",
            'transfer',
            'holding_to_withdrawable',
            'withdrawable',
            holding,
            notes="Loan fully repaid - holding balance transferred to withdrawable",
            meta={'loan_id': str(loan.id), 'loan_number': loan.loan_number, 'loan_closed': True},
        )
        logger.info(f"Released {holding} BSK holding balance for user {loan.user_id} (loan {loan.loan_number})")
