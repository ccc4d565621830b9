"""Core interfaces for the ledger collaborators and notification callbacks."""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from .transactions import SignedTransaction, UnsignedTransaction
from .types import PoolSnapshot, PriceUpdateEvent


@runtime_checkable
class LedgerTransport(Protocol):
    """Ledger RPC transport protocol."""

    async def fetch_account(self, address: str) -> bytes:
        """Fetch raw account data.

        Raises:
            AccountNotFound: If the account does not exist
            TransportError: On network or node failure
        """
        ...

    async def get_program_accounts(
        self, program_id: str, filters: list[dict[str, Any]]
    ) -> list[tuple[str, bytes]]:
        """List accounts owned by a program that match the filters."""
        ...

    async def get_token_accounts_by_owner(
        self, owner: str, program_id: str
    ) -> list[tuple[str, bytes]]:
        """List token accounts held by an owner."""
        ...

    async def get_latest_blockhash(self) -> str:
        """Get a recent blockhash for transaction building."""
        ...

    async def simulate_transaction(self, signed: SignedTransaction) -> None:
        """Simulate a transaction before broadcast.

        Raises:
            TransactionRejected: If the simulation fails
        """
        ...

    async def submit_transaction(self, signed: SignedTransaction) -> str:
        """Submit a transaction and return its signature.

        Raises:
            TransactionRejected: If the ledger refuses the transaction
            TransportError: On network or node failure
        """
        ...


@runtime_checkable
class TxnSigner(Protocol):
    """Transaction signer protocol."""

    def sign(self, unsigned: UnsignedTransaction, key: Any) -> SignedTransaction:
        """Sign a transaction with the given key handle."""
        ...


SnapshotFetcher = Callable[[str], Awaitable[PoolSnapshot]]
"""Fetches a fresh snapshot for a pool address."""

PriceCallback = Callable[[PriceUpdateEvent], Awaitable[None] | None]
"""Receives price updates; may be a plain or a coroutine function."""
