"""
web3.py ledger provider.

Implements LedgerProvider against the Base network: the subscription
contract, the USDC token it charges in, and plain ERC-20/ETH transfers used
by the recurring payments job.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from autopay.core.config import settings
from autopay.core.errors import ConfigurationError
from autopay.features.ledger.provider import (
    LedgerError,
    LedgerRejectedError,
    TransactionReceipt,
)


logger = logging.getLogger("autopay")

NATIVE_TOKEN = "ETH"

# Token contracts on Base
TOKEN_ADDRESSES: Dict[str, str] = {
    "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "DAI": "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb",
    "cbBTC": "0xcbB7C0000aB88B473b1f5aFd9ef808440eed33Bf",
}


def _fn(name: str, inputs: list, outputs: list, mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


SUBSCRIPTION_ABI = [
    _fn("isActive", [("user", "address")], [("", "bool")]),
    _fn("getExpiry", [("user", "address")], [("", "uint256")]),
    _fn("getDaysRemaining", [("user", "address")], [("", "uint256")]),
    _fn("pricePerMonth", [], [("", "uint256")]),
    _fn("subscribe", [("months", "uint256")], [], "nonpayable"),
]

ERC20_ABI = [
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")], "nonpayable"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
    _fn("transfer", [("to", "address"), ("amount", "uint256")], [("", "bool")], "nonpayable"),
]


# Anything the node, the HTTP transport or address parsing can throw
_TRANSPORT_ERRORS = (Web3Exception, requests.RequestException, OSError, ValueError)


@contextmanager
def _ledger_call(name: str) -> Iterator[None]:
    """Translate web3/transport failures into LedgerError; reverts become LedgerRejectedError."""
    try:
        yield
    except ContractLogicError as e:
        raise LedgerRejectedError(f"{name} reverted: {e}")
    except TimeExhausted as e:
        raise LedgerError(f"{name} not included: {e}")
    except _TRANSPORT_ERRORS as e:
        raise LedgerError(f"{name} failed: {e}")


class Web3TransactionHandle:
    """Handle on a broadcast transaction."""

    def __init__(self, w3: Web3, tx_hash: str):
        self._w3 = w3
        self.tx_hash = tx_hash

    def wait(self) -> TransactionReceipt:
        with _ledger_call(f"receipt {self.tx_hash}"):
            receipt = self._w3.eth.wait_for_transaction_receipt(self.tx_hash)

        status = int(receipt.get("status", 0))
        result = TransactionReceipt(
            tx_hash=self.tx_hash,
            block_number=receipt.get("blockNumber"),
            status=status,
        )
        if status != 1:
            raise LedgerRejectedError(f"Transaction {self.tx_hash} reverted")
        return result


class Web3Ledger:
    """web3.py implementation of LedgerProvider."""

    def __init__(
        self,
        *,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        token_address: Optional[str] = None,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        w3: Optional[Web3] = None,
    ):
        self.contract_address = contract_address or settings.SUBSCRIPTION_CONTRACT_ADDRESS
        self.token_address = token_address or settings.USDC_CONTRACT_ADDRESS
        self.chain_id = chain_id or settings.CHAIN_ID
        key = private_key or settings.PAYER_PRIVATE_KEY

        if not self.contract_address:
            raise ConfigurationError("SUBSCRIPTION_CONTRACT_ADDRESS not configured")
        if not key:
            raise ConfigurationError("PAYER_PRIVATE_KEY not configured")

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url or settings.BASE_RPC_URL))
        try:
            self._account = self.w3.eth.account.from_key(key)
            self._subscription = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address), abi=SUBSCRIPTION_ABI
            )
            self._token = self._erc20(self.token_address)
        except ValueError as e:
            raise ConfigurationError(f"Invalid ledger wiring: {e}")
        self.signer_address = self._account.address

    def _erc20(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=ERC20_ABI)

    def _call(self, name: str, build) -> int:
        """Build the contract call and run it; `build` is deferred so address parsing is guarded too."""
        with _ledger_call(name):
            return build().call()

    def _send(self, name: str, build_tx) -> Web3TransactionHandle:
        with _ledger_call(name):
            tx = build_tx()
            tx.setdefault("from", self.signer_address)
            tx.setdefault("chainId", self.chain_id)
            if "nonce" not in tx:
                tx["nonce"] = self.w3.eth.get_transaction_count(self.signer_address)
            signed = self._account.sign_transaction(tx)
            tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info(f"[ledger] {name} broadcast", extra={"address": self.signer_address, "stage": name})
        return Web3TransactionHandle(self.w3, tx_hash)

    def _transact(self, name: str, build) -> Web3TransactionHandle:
        def build_tx():
            return build().build_transaction({
                "from": self.signer_address,
                "chainId": self.chain_id,
                "nonce": self.w3.eth.get_transaction_count(self.signer_address),
            })
        return self._send(name, build_tx)

    # Reads

    def is_active(self, address: str) -> bool:
        fns = self._subscription.functions
        return bool(self._call("isActive", lambda: fns.isActive(Web3.to_checksum_address(address))))

    def get_expiry(self, address: str) -> int:
        fns = self._subscription.functions
        return int(self._call("getExpiry", lambda: fns.getExpiry(Web3.to_checksum_address(address))))

    def get_days_remaining(self, address: str) -> int:
        fns = self._subscription.functions
        return int(self._call("getDaysRemaining", lambda: fns.getDaysRemaining(Web3.to_checksum_address(address))))

    def price_per_month(self) -> int:
        return int(self._call("pricePerMonth", self._subscription.functions.pricePerMonth))

    def balance_of(self, address: str) -> int:
        fns = self._token.functions
        return int(self._call("balanceOf", lambda: fns.balanceOf(Web3.to_checksum_address(address))))

    def allowance(self, owner: str, spender: str) -> int:
        fns = self._token.functions
        return int(self._call(
            "allowance",
            lambda: fns.allowance(Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)),
        ))

    # Mutations

    def approve(self, spender: str, amount: int) -> Web3TransactionHandle:
        fns = self._token.functions
        return self._transact("approve", lambda: fns.approve(Web3.to_checksum_address(spender), amount))

    def subscribe(self, units: int) -> Web3TransactionHandle:
        fns = self._subscription.functions
        return self._transact("subscribe", lambda: fns.subscribe(units))

    def transfer(self, token_symbol: str, recipient: str, amount: int) -> Web3TransactionHandle:
        if token_symbol == NATIVE_TOKEN:
            return self._send("transfer", lambda: {
                "to": Web3.to_checksum_address(recipient),
                "value": amount,
                "gas": 21000,
                "gasPrice": self.w3.eth.gas_price,
            })

        token_address = TOKEN_ADDRESSES.get(token_symbol)
        if not token_address:
            raise LedgerError(f"Unsupported token: {token_symbol}")
        token = self._erc20(token_address)
        if self._call("balanceOf", lambda: token.functions.balanceOf(self.signer_address)) < amount:
            raise LedgerRejectedError(f"Insufficient {token_symbol} balance")
        return self._transact(
            "transfer", lambda: token.functions.transfer(Web3.to_checksum_address(recipient), amount)
        )


def get_ledger() -> Web3Ledger:
    """Build the configured ledger. Raises ConfigurationError when wiring is missing."""
    return Web3Ledger()
