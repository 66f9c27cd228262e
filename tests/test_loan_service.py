"""Tests for BSK loan origination, disbursal and repayment."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import create_user
from ismart_edge.core import ledger
from ismart_edge.core.errors import (
    ConflictError,
    InsufficientBalanceError,
    KycRequiredError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ismart_edge.core.models import (
    BskLoan,
    BskLoanAutoDebitLog,
    BskLoanInstallment,
    BskLoanLedger,
    BskLoanPrepayment,
    BskLoanSettings,
    BskRate,
)
from ismart_edge.core.utils.time_utils import today_utc
from ismart_edge.services.loan_service import LoanService, build_schedule


@pytest.fixture
def service():
    return LoanService()


@pytest.fixture
def loan_settings(database):
    BskRate.create(rate_inr_per_bsk=Decimal("10"))
    return BskLoanSettings.create(
        kyc_required=False,
        default_tenor_weeks=4,
        default_interest_rate_weekly=Decimal("0.5"),
        origination_fee_percent=Decimal("3"),
    )


def _installments(loan_id):
    return list(
        BskLoanInstallment.select()
        .where(BskLoanInstallment.loan == loan_id)
        .order_by(BskLoanInstallment.installment_number)
    )


@pytest.fixture
def active_loan(loan_settings, service):
    """Disbursed loan: 1000 INR at 10 INR/BSK, 97 BSK credited, 102 BSK due over 4 weeks."""
    user_id = create_user()
    loan = service.apply(user_id, 1000)["loan"]
    service.disburse(uuid.uuid4(), loan["id"], "approve")
    return user_id, BskLoan.get_by_id(uuid.UUID(loan["id"]))


def test_apply_creates_pending_loan(loan_settings, service):
    user_id = create_user()

    result = service.apply(user_id, 1000, "in")

    loan = result["loan"]
    assert result["success"] is True
    assert loan["status"] == "pending"
    assert loan["principal_bsk"] == 100.0
    assert loan["origination_fee_bsk"] == 3.0
    assert loan["net_disbursed_bsk"] == 97.0
    assert loan["total_due_bsk"] == 102.0
    assert loan["outstanding_bsk"] == 102.0
    assert loan["weekly_emi_bsk"] == 25.5
    assert loan["region"] == "IN"
    assert loan["loan_number"].startswith("BSK")
    stored = BskLoan.get_by_id(uuid.UUID(loan["id"]))
    assert stored.policy_snapshot["default_tenor_weeks"] == 4
    assert stored.policy_snapshot["kyc_required"] is False


def test_apply_amount_out_of_range(loan_settings, service):
    with pytest.raises(ValidationError) as exc_info:
        service.apply(create_user(), 50)
    assert exc_info.value.message == "Loan amount must be between ₹100 and ₹25000"


def test_apply_requires_kyc(loan_settings, service):
    loan_settings.kyc_required = True
    loan_settings.save()

    with pytest.raises(KycRequiredError) as exc_info:
        service.apply(create_user(kyc="pending"), 1000)
    assert exc_info.value.extra["kyc_required"] is True

    assert service.apply(create_user("bob", kyc="approved"), 1000)["success"] is True


def test_apply_limits_concurrent_loans(loan_settings, service):
    user_id = create_user()
    service.apply(user_id, 1000)

    with pytest.raises(ValidationError, match="Maximum 1 active loan"):
        service.apply(user_id, 1000)


def test_apply_region_and_exposure_rules(loan_settings, service):
    loan_settings.region_restrictions = ["IN"]
    loan_settings.max_concurrent_loans_per_user = 3
    loan_settings.per_user_exposure_cap_inr = Decimal("1500")
    loan_settings.save()
    user_id = create_user()

    with pytest.raises(ValidationError, match="not available in region US"):
        service.apply(user_id, 1000, "US")

    service.apply(user_id, 1000)
    with pytest.raises(ValidationError, match="exposure limit"):
        service.apply(user_id, 600)


def test_apply_without_rate(database, service):
    BskLoanSettings.create(kyc_required=False)
    with pytest.raises(ValidationError, match="BSK rate not available"):
        service.apply(create_user(), 1000)


def test_apply_when_disabled(loan_settings, service):
    loan_settings.system_enabled = False
    loan_settings.save()
    with pytest.raises(ValidationError, match="Loan system is currently disabled"):
        service.apply(create_user(), 1000)


def test_build_schedule_last_installment_absorbs_rounding(database):
    loan = BskLoan(
        id=uuid.uuid4(), tenor_weeks=3, total_due_bsk=Decimal("100"), principal_bsk=Decimal("90"),
        disbursal_rate_snapshot=Decimal("10"), schedule_denomination="fixed_bsk",
    )
    start = today_utc()

    rows = build_schedule(loan, start)

    assert [r["total_due_bsk"] for r in rows] == [
        Decimal("33.33333333"), Decimal("33.33333333"), Decimal("33.33333334")
    ]
    assert sum(r["total_due_bsk"] for r in rows) == Decimal("100")
    assert rows[0]["due_date"] == start + timedelta(weeks=1)
    assert rows[2]["due_date"] == start + timedelta(weeks=3)


def test_disburse_credits_holding_and_creates_schedule(active_loan):
    user_id, loan = active_loan

    assert loan.status == "active"
    assert ledger.get_bsk_balance(user_id) == (Decimal("97"), Decimal("0"))
    installments = _installments(loan.id)
    assert len(installments) == 4
    assert all(Decimal(i.total_due_bsk) == Decimal("25.5") for i in installments)
    assert loan.next_due_date == installments[0].due_date
    types = {row.transaction_type for row in BskLoanLedger.select().where(BskLoanLedger.loan == loan.id)}
    assert types == {"loan_disbursal", "origination_fee"}


def test_disburse_twice_fails(active_loan, service):
    _, loan = active_loan
    with pytest.raises(NotFoundError, match="not in pending status"):
        service.disburse(None, str(loan.id), "approve")


def test_reject_writes_off_loan(loan_settings, service):
    user_id = create_user()
    loan_id = service.apply(user_id, 1000)["loan"]["id"]

    result = service.disburse(uuid.uuid4(), loan_id, "reject", "Insufficient history")

    assert result == {"success": True, "message": "Loan rejected successfully"}
    loan = BskLoan.get_by_id(uuid.UUID(loan_id))
    assert loan.status == "written_off"
    assert loan.admin_notes == "Insufficient history"
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("0"))


def test_repay_single_emi(active_loan, service):
    user_id, loan = active_loan
    first, second = _installments(loan.id)[:2]

    result = service.repay(user_id, str(first.id))

    assert result["payment"]["amount_bsk"] == "25.5000"
    assert result["payment"]["remaining_balance_bsk"] == "76.5000"
    assert result["payment"]["loan_closed"] is False
    assert ledger.get_bsk_balance(user_id)[0] == Decimal("71.5")
    assert BskLoanInstallment.get_by_id(first.id).status == "paid"
    loan = BskLoan.get_by_id(loan.id)
    assert Decimal(loan.paid_bsk) == Decimal("25.5")
    assert loan.next_due_date == second.due_date


def test_repay_errors(active_loan, service):
    user_id, loan = active_loan
    first = _installments(loan.id)[0]

    with pytest.raises(NotFoundError):
        service.repay(user_id, str(uuid.uuid4()))
    with pytest.raises(PermissionDeniedError):
        service.repay(uuid.uuid4(), str(first.id))

    service.repay(user_id, str(first.id))
    with pytest.raises(ConflictError, match="Installment already paid"):
        service.repay(user_id, str(first.id))


def test_repay_applies_late_fee_after_grace(active_loan, service):
    user_id, loan = active_loan
    first = _installments(loan.id)[0]
    BskLoanInstallment.update(due_date=today_utc() - timedelta(days=10)).where(
        BskLoanInstallment.id == first.id
    ).execute()

    result = service.repay(user_id, str(first.id))

    # 1% late fee on 25.5 BSK
    assert result["payment"]["amount_bsk"] == "25.7550"
    assert Decimal(BskLoanInstallment.get_by_id(first.id).late_fee_bsk) == Decimal("0.255")


def test_prepay_full_closes_loan_and_releases_holding(active_loan, service):
    user_id, loan = active_loan
    first = _installments(loan.id)[0]

    ledger.record_bsk_transaction(user_id, "spend", "debit", "test", "holding", 90)
    with pytest.raises(InsufficientBalanceError) as exc_info:
        service.repay(user_id, str(first.id), "prepay_full")
    assert exc_info.value.extra == {"required": "102.0000", "available": "7.0000"}

    ledger.record_bsk_transaction(user_id, "top-up", "credit", "test", "holding", 100)
    result = service.repay(user_id, str(first.id), "prepay_full")

    assert result["message"] == "Loan paid in full!"
    assert result["payment"]["amount_bsk"] == "102.0000"
    assert result["payment"]["loan_closed"] is True
    loan = BskLoan.get_by_id(loan.id)
    assert loan.status == "closed"
    assert Decimal(loan.outstanding_bsk) == 0
    assert all(i.status == "paid" for i in _installments(loan.id))
    assert BskLoanPrepayment.get(BskLoanPrepayment.loan == loan.id).installments_cleared == 4
    # 7 + 100 holding - 102 paid, released on closure
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("5"))


def test_foreclose_settles_from_withdrawable(active_loan, service):
    user_id, loan = active_loan

    with pytest.raises(InsufficientBalanceError, match="Required: 102.00 BSK, Available: 0.00 BSK"):
        service.foreclose(user_id, str(loan.id))

    ledger.record_bsk_transaction(user_id, "earn", "credit", "ad_reward", "withdrawable", 150)
    result = service.foreclose(user_id, str(loan.id))

    assert result["success"] is True
    assert result["settlement_amount"] == 102.0
    assert result["installments_cleared"] == 4
    assert result["new_status"] == "closed"
    assert BskLoan.get_by_id(loan.id).status == "closed"
    assert BskLoanPrepayment.get(BskLoanPrepayment.loan == loan.id).is_foreclosure is True
    # 150 - 102 + 97 released holding
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("145"))

    with pytest.raises(ConflictError) as exc_info:
        service.foreclose(user_id, str(loan.id))
    assert exc_info.value.extra["already_processed"] is True


def test_foreclose_other_users_loan(active_loan, service):
    _, loan = active_loan
    with pytest.raises(NotFoundError, match="does not belong to you"):
        service.foreclose(uuid.uuid4(), str(loan.id))


def test_auto_debit_collects_due_installments(active_loan, service):
    user_id, loan = active_loan
    first, second = _installments(loan.id)[:2]
    ledger.record_bsk_transaction(user_id, "earn", "credit", "ad_reward", "withdrawable", 30)

    result = service.auto_debit(first.due_date.isoformat())

    assert result["processed"] == 1
    assert result["successful"] == 1
    assert BskLoanInstallment.get_by_id(first.id).payment_method == "auto_debit"
    assert ledger.get_bsk_balance(user_id)[1] == Decimal("4.5")

    result = service.auto_debit(second.due_date)

    assert result["insufficient_balance"] == 1
    assert result["failed"] == 1
    second = BskLoanInstallment.get_by_id(second.id)
    assert second.status == "overdue"
    assert second.retry_count == 1
    statuses = [row.status for row in BskLoanAutoDebitLog.select().order_by(BskLoanAutoDebitLog.created_at)]
    assert statuses == ["success", "insufficient_balance"]


def test_auto_debit_closes_loan_after_last_installment(active_loan, service):
    user_id, loan = active_loan
    ledger.record_bsk_transaction(user_id, "earn", "credit", "ad_reward", "withdrawable", 110)
    last = _installments(loan.id)[-1]

    result = service.auto_debit(last.due_date)

    assert result["successful"] == 4
    assert BskLoan.get_by_id(loan.id).status == "closed"
    # 110 - 102 + 97 released holding
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("105"))


def test_auto_debit_nothing_due(loan_settings, service):
    result = service.auto_debit()
    assert result["processed"] == 0
    assert result["message"] == "No installments due today"
