"""Tests for BSC client helpers that need no network."""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from ismart_edge.core.errors import ChainError
from ismart_edge.core.blockchain.bsc_client import BscClient, from_base_units, to_base_units


def test_base_unit_conversion():
    assert to_base_units(Decimal("1.5"), 18) == 1_500_000_000_000_000_000
    assert to_base_units(Decimal("0.1234567"), 6) == 123456
    assert from_base_units(2_500_000, 6) == Decimal("2.5")


def test_is_address():
    assert BscClient.is_address("0x55d398326f99059ff775485246999027b3197955")
    assert not BscClient.is_address("0x123")
    assert not BscClient.is_address(None)
    assert not BscClient.is_address("")


class FakeEth:
    """Records broadcasts; receipt behaviour is set per test."""

    gas_price = 5_000_000_000

    def __init__(self, receipt=None, receipt_error=None):
        self.broadcasts = []
        self.receipt = receipt
        self.receipt_error = receipt_error
        self.account = SimpleNamespace(sign_transaction=self._sign)

    def _sign(self, tx, private_key):
        return SimpleNamespace(raw_transaction=b"signed")

    def send_raw_transaction(self, raw):
        self.broadcasts.append(raw)
        return bytes.fromhex("ab" * 32)

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt

    def get_transaction_receipt(self, tx_hash):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt


def _client(eth):
    client = BscClient("http://127.0.0.1:8545")
    client.w3 = SimpleNamespace(eth=eth)
    return client


def test_send_native_returns_hash_after_broadcast():
    eth = FakeEth(receipt_error=TimeExhausted("not mined"))
    client = _client(eth)

    tx_hash = client.send_native("0x" + "11" * 32, "0x8ba1f109551bd432803012645ac136ddd64dba72", Decimal("0.5"), 3)

    assert tx_hash == "0x" + "ab" * 32
    assert eth.broadcasts == [b"signed"]
    # a receipt timeout after broadcast means "not mined yet", never a failure
    assert client.get_receipt_status(tx_hash) is None


@pytest.mark.parametrize("eth,expected", [
    (FakeEth(receipt={'status': 1}), True),
    (FakeEth(receipt={'status': 0}), False),
    (FakeEth(receipt_error=TransactionNotFound("unknown")), None),
])
def test_receipt_status(eth, expected):
    assert _client(eth).get_receipt_status("0x" + "ab" * 32, timeout=0) is expected


def test_receipt_lookup_failure_raises_chain_error():
    client = _client(FakeEth(receipt_error=ConnectionError("connection refused")))

    with pytest.raises(ChainError, match="Failed to fetch receipt"):
        client.get_receipt_status("0x" + "ab" * 32)


class RejectingEth(FakeEth):
    def send_raw_transaction(self, raw):
        raise ValueError("nonce too low")


def test_broadcast_failure_raises_chain_error():
    client = _client(RejectingEth())

    with pytest.raises(ChainError, match="nonce too low"):
        client.send_native("0x" + "11" * 32, "0x8ba1f109551bd432803012645ac136ddd64dba72", Decimal("1"), 3)
