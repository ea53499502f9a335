"""
Ledger provider protocol.

Defines the interface to the chain: the subscription contract, the ERC-20
token it charges in, and plain token transfers for recurring payments.
This allows swapping the web3 implementation for a stub without touching
the payment workflow.
"""
from typing import Protocol, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class TransactionReceipt:
    """Result of a confirmed (included) transaction."""
    tx_hash: str
    block_number: Optional[int]
    status: int  # 1 = success, 0 = reverted


class TransactionHandle(Protocol):
    """A broadcast transaction that has not necessarily been included yet."""

    tx_hash: str

    def wait(self) -> TransactionReceipt:
        """
        Block until the transaction is included.

        Raises:
            LedgerRejectedError: If the transaction reverted
            LedgerError: If the node could not be reached
        """
        ...


class LedgerProvider(Protocol):
    """
    Protocol for ledger providers.

    Reads are side-effect free. Mutations return a TransactionHandle that
    callers must wait on before doing anything else.
    """

    # Address mutations are signed with (None when the provider is read-only)
    signer_address: Optional[str]

    def is_active(self, address: str) -> bool:
        ...

    def get_expiry(self, address: str) -> int:
        """Expiry as a unix timestamp (0 = never subscribed)."""
        ...

    def get_days_remaining(self, address: str) -> int:
        ...

    def price_per_month(self) -> int:
        """Price of one unit (month) in token minor units."""
        ...

    def balance_of(self, address: str) -> int:
        ...

    def allowance(self, owner: str, spender: str) -> int:
        ...

    def approve(self, spender: str, amount: int) -> TransactionHandle:
        """
        Raise the spender allowance to `amount`.

        Raises:
            LedgerRejectedError: If the signer refused
            LedgerError: On any other failure
        """
        ...

    def subscribe(self, units: int) -> TransactionHandle:
        ...

    def transfer(self, token_symbol: str, recipient: str, amount: int) -> TransactionHandle:
        ...


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class LedgerRejectedError(LedgerError):
    """The signer refused or the transaction reverted."""
    pass
