"""
BNB Smart Chain client.

Balance lookups (``eth_getBalance`` / ERC20 ``balanceOf``) and hot-wallet
transfers (ERC20 ``transfer`` or native BNB) over JSON-RPC.
"""

from decimal import Decimal
from typing import Optional

import requests
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from ismart_edge.core.errors import ChainError
from ismart_edge.core.logger import log

BSC_CHAIN_ID = 56

# Gas limits for hot-wallet sends
ERC20_TRANSFER_GAS = 100000
NATIVE_TRANSFER_GAS = 21000

RECEIPT_TIMEOUT = 120

# ERC20 ABI (balanceOf, decimals and transfer only)
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    }
]


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer base units (truncating)."""
    return int(Decimal(amount) * (Decimal(10) ** decimals))


def from_base_units(value: int, decimals: int) -> Decimal:
    """Convert integer base units to a token amount."""
    return Decimal(value) / (Decimal(10) ** decimals)


class BscClient:
    """JSON-RPC client for BNB Smart Chain."""

    def __init__(self, rpc_url: str, chain_id: int = BSC_CHAIN_ID, timeout: int = 30):
        """
        Initialize BSC client.

        Args:
            rpc_url: JSON-RPC endpoint
            chain_id: Chain id used when signing (56 for mainnet)
            timeout: HTTP request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.chain_id = chain_id

        session = requests.Session()
        provider = Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout}, session=session)
        self.w3 = Web3(provider)
        # BSC block headers carry extra data beyond the 32 bytes web3 accepts by default
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    @staticmethod
    def is_address(address: Optional[str]) -> bool:
        return bool(address) and Web3.is_address(address)

    def _token_contract(self, contract_address: str):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=ERC20_ABI
        )

    def get_native_balance(self, address: str) -> Decimal:
        """Get BNB balance of an address."""
        try:
            wei = self.w3.eth.get_balance(Web3.to_checksum_address(address))
        except Exception as e:
            raise ChainError(f"Failed to fetch BNB balance for {address}: {e}")
        return from_base_units(wei, 18)

    def get_token_decimals(self, contract_address: str) -> int:
        try:
            return int(self._token_contract(contract_address).functions.decimals().call())
        except Exception as e:
            raise ChainError(f"Failed to fetch decimals for {contract_address}: {e}")

    def get_token_balance(self, contract_address: str, owner: str, decimals: Optional[int] = None) -> Decimal:
        """
        Get BEP-20 token balance via ``balanceOf``.

        Args:
            contract_address: Token contract
            owner: Holder address
            decimals: Token decimals (fetched from the contract when None)

        Returns:
            Balance in token units
        """
        if decimals is None:
            decimals = self.get_token_decimals(contract_address)
        try:
            raw = self._token_contract(contract_address).functions.balanceOf(
                Web3.to_checksum_address(owner)
            ).call()
        except Exception as e:
            raise ChainError(f"Failed to fetch token balance of {owner} on {contract_address}: {e}")
        return from_base_units(raw, decimals)

    def get_pending_nonce(self, address: str) -> int:
        """Next nonce for an address, counting pending transactions."""
        try:
            return self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), 'pending')
        except Exception as e:
            raise ChainError(f"Failed to fetch nonce for {address}: {e}")

    def address_of(self, private_key: str) -> str:
        """Address controlled by a private key."""
        return self.w3.eth.account.from_key(private_key).address

    def _sign_and_send(self, tx: dict, private_key: str) -> str:
        signed_txn = self.w3.eth.account.sign_transaction(tx, private_key=private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        log.info(f"Transaction submitted: {tx_hex}")
        return tx_hex

    def send_token(
        self,
        private_key: str,
        contract_address: str,
        to_address: str,
        amount: Decimal,
        decimals: int,
        nonce: int,
    ) -> str:
        """
        Broadcast a BEP-20 ``transfer`` from the hot wallet.

        Does not wait for the receipt; use ``get_receipt_status`` for that.

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            ChainError: The transaction could not be built or broadcast
        """
        sender = self.address_of(private_key)
        contract = self._token_contract(contract_address)
        try:
            tx = contract.functions.transfer(
                Web3.to_checksum_address(to_address),
                to_base_units(amount, decimals)
            ).build_transaction({
                'from': sender,
                'nonce': nonce,
                'gas': ERC20_TRANSFER_GAS,
                'gasPrice': self.w3.eth.gas_price,
                'chainId': self.chain_id
            })
            return self._sign_and_send(tx, private_key)
        except Exception as e:
            raise ChainError(f"Token transfer to {to_address} failed: {e}")

    def send_native(self, private_key: str, to_address: str, amount: Decimal, nonce: int) -> str:
        """Broadcast a BNB transfer from the hot wallet."""
        try:
            tx = {
                'to': Web3.to_checksum_address(to_address),
                'value': to_base_units(amount, 18),
                'nonce': nonce,
                'gas': NATIVE_TRANSFER_GAS,
                'gasPrice': self.w3.eth.gas_price,
                'chainId': self.chain_id
            }
            return self._sign_and_send(tx, private_key)
        except Exception as e:
            raise ChainError(f"BNB transfer to {to_address} failed: {e}")

    def get_receipt_status(self, tx_hash: str, timeout: float = RECEIPT_TIMEOUT) -> Optional[bool]:
        """
        Outcome of a broadcast transaction.

        Args:
            tx_hash: Transaction hash
            timeout: Seconds to wait for the receipt (0 checks once without waiting)

        Returns:
            True if mined successfully, False if reverted, None if not mined yet

        Raises:
            ChainError: The receipt lookup itself failed
        """
        try:
            if timeout:
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            else:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except (TimeExhausted, TransactionNotFound):
            log.warning(f"No receipt yet for {tx_hash}")
            return None
        except Exception as e:
            raise ChainError(f"Failed to fetch receipt for {tx_hash}: {e}", tx_hash=tx_hash)
        return receipt['status'] == 1
