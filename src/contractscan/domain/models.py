from __future__ import annotations
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .value_types import (
    Address, Chain, EndpointHealth, EventKind, JobStatus, Status, TxHash, TxSource,
)


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass(slots=True, frozen=True)
class Chunk:
    start_block: int
    end_block: int
    chain: Chain
    contract_address: Address

    def span(self) -> int: return self.end_block - self.start_block + 1

    def as_range(self) -> BlockRange:
        return BlockRange(self.start_block, self.end_block)


@dataclass(slots=True)
class Endpoint:
    url: str
    chain: Chain
    health: EndpointHealth = "healthy"
    last_checked: float = 0.0
    consecutive_failures: int = 0
    response_time_ms: float = 0.0
    total_successes: int = 0
    total_failures: int = 0
    last_error: str | None = None

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


# ──────────────────────────────
# Chain records
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class EventLog:
    address: Address                   # lowercased hex with 0x
    topics: tuple[str, ...]            # all topics, lowercased with 0x
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: TxHash
    log_index: int
    block_hash: str | None = None
    transaction_index: int | None = None
    removed: bool = False
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["topics"] = list(self.topics)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "EventLog":
        return cls(
            address=Address(d["address"]),
            topics=tuple(d.get("topics") or ()),
            data_hex=d.get("data_hex") or "0x",
            block_number=int(d["block_number"]),
            tx_hash=TxHash(d["tx_hash"]),
            log_index=int(d["log_index"]),
            block_hash=d.get("block_hash"),
            transaction_index=d.get("transaction_index"),
            removed=bool(d.get("removed", False)),
            extra=dict(d.get("extra") or {}),
        )


@dataclass(slots=True, frozen=True)
class Transaction:
    hash: TxHash
    block_number: int
    from_address: Address
    to_address: Optional[Address]      # None for contract creation
    value: str = "0"                   # big ints as decimal strings
    gas_price: str = "0"
    gas_limit: str = "0"
    gas_used: str = "0"
    nonce: int = 0
    transaction_index: int | None = None
    input: str = "0x"
    status: bool | None = None
    block_timestamp: int | None = None
    source: TxSource = "event"
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Transaction":
        return cls(
            hash=TxHash(d["hash"]),
            block_number=int(d["block_number"]),
            from_address=Address(d["from_address"]),
            to_address=Address(d["to_address"]) if d.get("to_address") else None,
            value=str(d.get("value", "0")),
            gas_price=str(d.get("gas_price", "0")),
            gas_limit=str(d.get("gas_limit", "0")),
            gas_used=str(d.get("gas_used", "0")),
            nonce=int(d.get("nonce", 0)),
            transaction_index=d.get("transaction_index"),
            input=d.get("input") or "0x",
            status=d.get("status"),
            block_timestamp=d.get("block_timestamp"),
            source=d.get("source", "event"),
            extra=dict(d.get("extra") or {}),
        )


def _tx_order(tx: Transaction) -> tuple[int, int, str]:
    return (tx.block_number, tx.transaction_index if tx.transaction_index is not None else -1, tx.hash)


def _event_order(ev: EventLog) -> tuple[int, int]:
    return (ev.block_number, ev.log_index)


@dataclass(slots=True)
class ScanResult:
    """Transactions, events, accounts and blocks for a contract over a block range.

    Records keep the order they were added in until they are merged into another
    result; merging dedupes transactions by hash and events by (tx_hash, log_index)
    and re-sorts by block, so merging the same chunk twice changes nothing.
    """
    transactions: list[Transaction] = field(default_factory=list)
    events: list[EventLog] = field(default_factory=list)
    accounts: set[str] = field(default_factory=set)
    blocks: set[int] = field(default_factory=set)
    block_range: BlockRange | None = None
    _tx_hashes: set[str] = field(default_factory=set, repr=False, compare=False)
    _event_keys: set[tuple[str, int]] = field(default_factory=set, repr=False, compare=False)

    @classmethod
    def from_records(
        cls,
        transactions: Iterable[Transaction],
        events: Iterable[EventLog],
        block_range: BlockRange | None = None,
    ) -> "ScanResult":
        res = cls(transactions=list(transactions), events=list(events), block_range=block_range)
        res._tx_hashes = {t.hash for t in res.transactions}
        res._event_keys = {e.key for e in res.events}
        for tx in res.transactions:
            res._index_tx(tx)
        res.blocks.update(e.block_number for e in res.events)
        return res

    def _index_tx(self, tx: Transaction) -> None:
        self.accounts.add(tx.from_address)
        if tx.to_address:
            self.accounts.add(tx.to_address)
        self.blocks.add(tx.block_number)

    def merge(self, other: "ScanResult") -> int:
        """Fold `other` into self; returns how many new records were added."""
        added = 0
        for tx in other.transactions:
            if tx.hash in self._tx_hashes:
                continue
            self._tx_hashes.add(tx.hash)
            self.transactions.append(tx)
            self._index_tx(tx)
            added += 1
        for ev in other.events:
            if ev.key in self._event_keys:
                continue
            self._event_keys.add(ev.key)
            self.events.append(ev)
            self.blocks.add(ev.block_number)
            added += 1
        if added:
            self.transactions.sort(key=_tx_order)
            self.events.sort(key=_event_order)
        if other.block_range is not None:
            if self.block_range is None:
                self.block_range = other.block_range
            else:
                self.block_range = BlockRange(
                    min(self.block_range.start, other.block_range.start),
                    max(self.block_range.end, other.block_range.end),
                )
        return added

    def summary(self) -> dict[str, Any]:
        return {
            "total_transactions": len(self.transactions),
            "total_events": len(self.events),
            "unique_accounts": len(self.accounts),
            "unique_blocks": len(self.blocks),
            "block_range": self.block_range.to_dict() if self.block_range else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactions": [t.to_dict() for t in self.transactions],
            "events": [e.to_dict() for e in self.events],
            "accounts": sorted(self.accounts),
            "blocks": sorted(self.blocks),
            "block_range": self.block_range.to_dict() if self.block_range else None,
            "metrics": self.summary(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ScanResult":
        br = d.get("block_range")
        res = cls.from_records(
            (Transaction.from_dict(t) for t in d.get("transactions", [])),
            (EventLog.from_dict(e) for e in d.get("events", [])),
            BlockRange(int(br["start"]), int(br["end"])) if br else None,
        )
        res.accounts.update(d.get("accounts", []))
        res.blocks.update(int(b) for b in d.get("blocks", []))
        return res


@dataclass(slots=True, frozen=True)
class DeploymentInfo:
    found: bool
    block_number: int | None = None
    transaction_hash: str | None = None
    deployer: str | None = None
    date: str | None = None            # ISO-8601, UTC
    reason: str | None = None

    @classmethod
    def not_found(cls, reason: str) -> "DeploymentInfo":
        return cls(found=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class Checkpoint:
    contract_address: Address
    chain: Chain
    last_completed_block: int
    updated_at: float = 0.0
    # merged, inclusive block intervals already indexed
    covered: tuple[tuple[int, int], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["covered"] = [list(iv) for iv in self.covered]
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Checkpoint":
        return cls(
            contract_address=Address(d["contract_address"]),
            chain=Chain(d["chain"]),
            last_completed_block=int(d["last_completed_block"]),
            updated_at=float(d.get("updated_at", 0.0)),
            covered=tuple((int(lo), int(hi)) for lo, hi in d.get("covered") or ()),
        )


@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Status = "pending"
    attempts: int = 0
    error: str | None = None
    logs: int = 0
    transactions: int = 0
    updated_at: float = 0.0


# ──────────────────────────────
# Jobs and progress events
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class ScanRequest:
    user_id: str
    contract_address: str
    chain: str
    tier: str = "free"
    from_block: int | None = None
    to_block: int | None = None
    chunk_size: int | None = None


@dataclass(slots=True)
class ScanJob:
    job_id: str
    request: ScanRequest
    status: JobStatus = JobStatus.PENDING
    current_step: str = "queued"
    from_block: int | None = None
    to_block: int | None = None
    blocks_total: int = 0
    blocks_completed: int = 0
    completed_range: BlockRange | None = None
    deployment: DeploymentInfo | None = None
    partial: bool = False
    error: str | None = None
    summary: dict[str, Any] | None = None
    cancel_requested: bool = False
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def percent(self) -> float:
        if self.blocks_total <= 0:
            return 100.0 if self.status is JobStatus.COMPLETED else 0.0
        return round(100.0 * self.blocks_completed / self.blocks_total, 2)

    def snapshot(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.request.user_id,
            "contract_address": self.request.contract_address,
            "chain": self.request.chain,
            "status": self.status.value,
            "current_step": self.current_step,
            "percent": self.percent,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "completed_range": self.completed_range.to_dict() if self.completed_range else None,
            "partial": self.partial,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    kind: EventKind
    job_id: str
    consumer_id: str
    payload: dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def terminal(self) -> bool:
        return self.kind != "progress"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
