"""Shared fixtures: temporary database, users, assets, tokens and a fake chain client."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest

from ismart_edge.core.blockchain.bsc_client import BscClient
from ismart_edge.core.config_loader import validate_config
from ismart_edge.core.database_handler import DatabaseHandler
from ismart_edge.core.errors import ChainError
from ismart_edge.core.models import Asset, KycProfile, Profile, UserRole

JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
HOT_WALLET_KEY = "0x" + "11" * 32
HOT_WALLET_ADDRESS = "0x19e7e376e7c213b7e7e7e46cc70a5dd086daff2a"
USER_WALLET = "0x8ba1f109551bd432803012645ac136ddd64dba72"
USDT_CONTRACT = "0x55d398326f99059fF775485246999027B3197955"


class FakeBscClient:
    """In-memory stand-in for BscClient; records sends instead of broadcasting."""

    is_address = staticmethod(BscClient.is_address)

    def __init__(self):
        self.native_balance = Decimal("1")
        self.token_balances = {}
        self.nonce = 7
        self.sent = []
        self.fail_sends = {}
        # tx_hash -> True (mined), False (reverted), None (no receipt yet)
        self.receipts = {}
        self.fail_balance = False

    def address_of(self, private_key):
        return HOT_WALLET_ADDRESS

    def get_native_balance(self, address):
        if self.fail_balance:
            raise ChainError("RPC unavailable")
        return self.native_balance

    def get_token_balance(self, contract_address, owner, decimals=None):
        if self.fail_balance:
            raise ChainError("RPC unavailable")
        return self.token_balances.get(contract_address, Decimal("0"))

    def get_pending_nonce(self, address):
        return self.nonce

    def _send(self, to_address, amount, nonce, contract_address=None):
        error = self.fail_sends.get(to_address)
        if error:
            raise ChainError(error)
        self.sent.append({'to': to_address, 'amount': amount, 'nonce': nonce, 'contract': contract_address})
        return "0x" + f"{len(self.sent):064x}"

    def send_token(self, private_key, contract_address, to_address, amount, decimals, nonce):
        return self._send(to_address, amount, nonce, contract_address)

    def send_native(self, private_key, to_address, amount, nonce):
        return self._send(to_address, amount, nonce)

    def get_receipt_status(self, tx_hash, timeout=120):
        status = self.receipts.get(tx_hash, True)
        if isinstance(status, Exception):
            raise status
        return status


def make_token(user_id=None, role="authenticated", secret=JWT_SECRET, expires_in=3600, audience="authenticated"):
    payload = {
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if user_id is not None:
        payload["sub"] = str(user_id)
    if audience is not None:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id=None, **kwargs):
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


def service_header():
    return auth_header(role="service_role", audience=None)


def create_user(username="alice", kyc=None, admin=False, wallet=None, created_at=None):
    user_id = uuid.uuid4()
    Profile.create(
        user_id=user_id,
        username=username,
        email=f"{username}@example.com",
        bsc_wallet_address=wallet,
        created_at=created_at or datetime(2024, 1, 1),
    )
    if kyc:
        KycProfile.create(user_id=user_id, status=kyc)
    if admin:
        UserRole.create(user_id=user_id, role="admin")
    return user_id


@pytest.fixture
def database(tmp_path):
    database = DatabaseHandler.initialize_database(f"sqlite:///{tmp_path / 'test.db'}")
    yield database
    DatabaseHandler.close()


@pytest.fixture
def usdt(database):
    return Asset.create(symbol="USDT", name="Tether USD", network="BEP20", contract_address=USDT_CONTRACT, decimals=18)


@pytest.fixture
def bnb(database):
    return Asset.create(symbol="BNB", name="BNB", network="BSC", contract_address=None, decimals=18)


@pytest.fixture
def fake_bsc():
    return FakeBscClient()


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("ADMIN_WALLET_PRIVATE_KEY", HOT_WALLET_KEY)
    return validate_config({
        'database': {'url': f"sqlite:///{tmp_path / 'api.db'}"},
        'logging': {'level': 'WARNING'},
    })


@pytest.fixture
def client(app_config, fake_bsc):
    from fastapi.testclient import TestClient
    from ismart_edge.api.dependencies import initialize_services, shutdown_services
    from ismart_edge.api.main import app

    initialize_services(app_config, bsc_client=fake_bsc)
    yield TestClient(app)
    shutdown_services()
