from __future__ import annotations
from enum import Enum
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
Chain   = NewType("Chain", str)     # registry key, e.g. "ethereum"
Status  = Literal["pending", "done", "failed"]
EndpointHealth = Literal["healthy", "degraded", "unreachable"]
EventKind = Literal["progress", "completion", "error"]
TxSource = Literal["event", "to_contract", "from_contract"]


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def normalize_address(addr: str) -> Address:
    return Address(str(addr).strip().lower())


def normalize_hash(h: str) -> TxHash:
    return TxHash(str(h).strip().lower())
