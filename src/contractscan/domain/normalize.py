from __future__ import annotations
from typing import Any, Mapping

from .models import EventLog, Transaction
from .value_types import Address, TxSource, normalize_address, normalize_hash

_LOG_FIELDS = frozenset({
    "address", "topics", "data", "blockNumber", "transactionHash",
    "logIndex", "blockHash", "transactionIndex", "removed",
})
_TX_FIELDS = frozenset({
    "hash", "blockNumber", "from", "to", "value", "gasPrice", "gas",
    "nonce", "transactionIndex", "input",
})


def hex_to_int(v: Any, default: int | None = None) -> int | None:
    """Handles 0x..., decimal strings, and native ints; None -> default."""
    if v is None:
        return default
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    if not s:
        return default
    return int(s, 16) if s.startswith("0x") else int(s)


def _dec_str(v: Any) -> str:
    n = hex_to_int(v, 0)
    return str(n)


def parse_log(rl: Mapping[str, Any]) -> EventLog:
    topics = tuple((t if isinstance(t, str) else t.decode()).lower() for t in rl.get("topics") or ())
    return EventLog(
        address=normalize_address(rl["address"]),
        topics=topics,
        data_hex=str(rl.get("data") or "0x"),
        block_number=hex_to_int(rl["blockNumber"]),
        tx_hash=normalize_hash(rl.get("transactionHash") or rl.get("transaction_hash") or ""),
        log_index=hex_to_int(rl["logIndex"]),
        block_hash=(rl.get("blockHash") or None),
        transaction_index=hex_to_int(rl.get("transactionIndex")),
        removed=bool(rl.get("removed", False)),
        extra={k: v for k, v in rl.items() if k not in _LOG_FIELDS},
    )


def parse_transaction(
    tx: Mapping[str, Any],
    receipt: Mapping[str, Any] | None = None,
    *,
    block_timestamp: int | None = None,
    source: TxSource = "event",
) -> Transaction:
    status: bool | None = None
    gas_used = "0"
    if receipt:
        st = receipt.get("status")
        status = None if st is None else hex_to_int(st) == 1
        gas_used = _dec_str(receipt.get("gasUsed"))
    to = tx.get("to")
    return Transaction(
        hash=normalize_hash(tx["hash"]),
        block_number=hex_to_int(tx["blockNumber"]),
        from_address=normalize_address(tx["from"]),
        to_address=normalize_address(to) if to else None,
        value=_dec_str(tx.get("value")),
        gas_price=_dec_str(tx.get("gasPrice")),
        gas_limit=_dec_str(tx.get("gas")),
        gas_used=gas_used,
        nonce=hex_to_int(tx.get("nonce"), 0),
        transaction_index=hex_to_int(tx.get("transactionIndex")),
        input=str(tx.get("input") or "0x"),
        status=status,
        block_timestamp=block_timestamp,
        source=source,
        extra={k: v for k, v in tx.items() if k not in _TX_FIELDS},
    )


def receipt_contract_address(receipt: Mapping[str, Any] | None) -> Address | None:
    if not receipt or not receipt.get("contractAddress"):
        return None
    return normalize_address(receipt["contractAddress"])
