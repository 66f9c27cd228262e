"""Tests for the BSK and trading balance procedures."""

import uuid
from decimal import Decimal

import pytest

from ismart_edge.core import ledger
from ismart_edge.core.errors import InsufficientBalanceError, ValidationError
from ismart_edge.core.models import BskLedgerEntry, TradingLedgerEntry, UserBskBalance


def test_round_amount_half_up_to_eight_places():
    assert ledger.round_amount("1.000000005") == Decimal("1.00000001")
    assert ledger.round_amount(2) == Decimal("2.00000000")


@pytest.mark.parametrize("value", ["abc", None, True, "NaN", "Infinity"])
def test_to_decimal_rejects_non_numbers(value):
    with pytest.raises(ValidationError):
        ledger.to_decimal(value)


def test_credit_holding_updates_balance_and_totals(database):
    user_id = uuid.uuid4()

    entry = ledger.record_bsk_transaction(user_id, "k1", "credit", "ad_reward", "holding", "10.5")

    holding, withdrawable = ledger.get_bsk_balance(user_id)
    assert holding == Decimal("10.5")
    assert withdrawable == Decimal("0")
    assert Decimal(entry.holding_after) == Decimal("10.5")
    balance = UserBskBalance.get(UserBskBalance.user_id == user_id)
    assert Decimal(balance.total_earned_holding) == Decimal("10.5")


def test_same_idempotency_key_applies_once(database):
    user_id = uuid.uuid4()

    first = ledger.record_bsk_transaction(user_id, "dup", "credit", "ad_reward", "withdrawable", 5)
    second = ledger.record_bsk_transaction(user_id, "dup", "credit", "ad_reward", "withdrawable", 5)

    assert first.id == second.id
    assert ledger.get_bsk_balance(user_id)[1] == Decimal("5")
    assert BskLedgerEntry.select().where(BskLedgerEntry.user_id == user_id).count() == 1


def test_debit_beyond_balance_is_rejected_without_side_effects(database):
    user_id = uuid.uuid4()
    ledger.record_bsk_transaction(user_id, "seed", "credit", "ad_reward", "holding", 3)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        ledger.record_bsk_transaction(user_id, "spend", "debit", "loan_repayment", "holding", 4)

    assert exc_info.value.extra == {"required": "4.0000", "available": "3.0000"}
    assert ledger.get_bsk_balance(user_id) == (Decimal("3"), Decimal("0"))
    assert not BskLedgerEntry.select().where(BskLedgerEntry.idempotency_key == "spend").exists()


def test_transfer_moves_holding_to_withdrawable(database):
    user_id = uuid.uuid4()
    ledger.record_bsk_transaction(user_id, "seed", "credit", "loan_disbursal", "holding", 8)

    entry = ledger.record_bsk_transaction(
        user_id, "release", "transfer", "holding_to_withdrawable", "withdrawable", 8
    )

    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("8"))
    assert Decimal(entry.withdrawable_after) == Decimal("8")


def test_transfer_must_target_withdrawable(database):
    with pytest.raises(ValidationError):
        ledger.record_bsk_transaction(uuid.uuid4(), "bad", "transfer", "x", "holding", 1)


def test_zero_amount_rejected(database):
    with pytest.raises(ValidationError):
        ledger.record_bsk_transaction(uuid.uuid4(), "zero", "credit", "x", "holding", "0.000000001")


def test_trading_entry_tracks_post_balances(database, usdt):
    user_id = uuid.uuid4()

    ledger.record_trading_entry(user_id, usdt, 100, 0, ledger.ENTRY_DEPOSIT)
    entry = ledger.record_trading_entry(user_id, usdt, -40, 40, ledger.ENTRY_FILL_DEBIT)

    assert ledger.get_wallet_balance(user_id, usdt) == (Decimal("60"), Decimal("40"))
    assert Decimal(entry.balance_available_after) == Decimal("60")
    assert Decimal(entry.balance_locked_after) == Decimal("40")
    assert entry.asset_symbol == "USDT"


def test_trading_entry_cannot_go_negative(database, usdt):
    user_id = uuid.uuid4()
    ledger.record_trading_entry(user_id, usdt, 10, 0, ledger.ENTRY_DEPOSIT)

    with pytest.raises(InsufficientBalanceError):
        ledger.record_trading_entry(user_id, usdt, -11, 0, ledger.ENTRY_WITHDRAWAL)

    assert ledger.get_wallet_balance(user_id, usdt) == (Decimal("10"), Decimal("0"))
    assert TradingLedgerEntry.select().where(TradingLedgerEntry.user_id == user_id).count() == 1
