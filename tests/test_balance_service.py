"""Tests for the BEP-20 balance lookup."""

from decimal import Decimal

from conftest import USDT_CONTRACT, USER_WALLET, create_user
from ismart_edge.core import ledger
from ismart_edge.core.models import Asset
from ismart_edge.services.balance_service import BalanceService


def test_balances_combine_onchain_and_trading(database, usdt, bnb, fake_bsc):
    Asset.create(symbol="ETH", name="Ether", network="ERC20", contract_address="0x1")
    user_id = create_user(wallet=USER_WALLET)
    ledger.record_trading_entry(user_id, usdt, 40, 0, ledger.ENTRY_DEPOSIT)
    ledger.record_trading_entry(user_id, usdt, -15, 15, ledger.ENTRY_FILL_DEBIT)
    fake_bsc.token_balances[USDT_CONTRACT] = Decimal("12.5")
    fake_bsc.native_balance = Decimal("0.2")

    result = BalanceService(fake_bsc).get_bep20_balances(user_id)

    assert result["success"] is True
    assert result["wallet_address"] == USER_WALLET
    by_symbol = {b["symbol"]: b for b in result["balances"]}
    assert set(by_symbol) == {"BNB", "USDT"}
    assert by_symbol["USDT"]["onchain_balance"] == 12.5
    assert by_symbol["USDT"]["app_available"] == 25.0
    assert by_symbol["USDT"]["app_locked"] == 15.0
    assert by_symbol["USDT"]["app_balance"] == 40.0
    assert by_symbol["BNB"]["onchain_balance"] == 0.2
    assert "error" not in by_symbol["BNB"]


def test_chain_failure_is_reported_per_asset(database, usdt, fake_bsc):
    user_id = create_user(wallet=USER_WALLET)
    fake_bsc.fail_balance = True

    balance = BalanceService(fake_bsc).get_bep20_balances(user_id)["balances"][0]

    assert balance["onchain_balance"] is None
    assert balance["error"] == "RPC unavailable"
    assert balance["app_balance"] == 0.0


def test_no_wallet_address(database, usdt, fake_bsc):
    result = BalanceService(fake_bsc).get_bep20_balances(create_user())

    assert result["wallet_address"] is None
    assert result["balances"][0]["error"] == "No wallet address registered"


def test_invalid_wallet_address_treated_as_missing(database, usdt, fake_bsc):
    result = BalanceService(fake_bsc).get_bep20_balances(create_user(wallet="not-an-address"))

    assert result["wallet_address"] is None
