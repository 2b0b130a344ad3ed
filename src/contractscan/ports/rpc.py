# contractscan/ports/rpc.py
from __future__ import annotations

from typing import Any, Protocol
from ..domain.models import EventLog
from ..domain.value_types import Address


class RPCClient(Protocol):
    """Port defining the contract for one Ethereum JSON-RPC endpoint."""

    url: str

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def get_logs(self, address: Address, from_block: int, to_block: int) -> list[EventLog]:
        """Return normalized, typed logs emitted by `address` in [from_block, to_block] inclusive."""

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        """Return the raw transaction object, or None if the node does not know it."""

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Return the raw transaction receipt, or None if unavailable."""

    async def get_block(self, number: int, full_transactions: bool = False) -> dict[str, Any] | None:
        """Return the raw block object (optionally with full transaction objects)."""

    async def get_code(self, address: Address, block: int) -> str:
        """Return the deployed bytecode of `address` at `block` ('0x' when none)."""

    async def aclose(self) -> None:
        """Release the underlying connection pool."""
