from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class UserStats:
    blocks_processed: int = 0
    chunks_processed: int = 0
    processing_time_s: float = 0.0
    errors: int = 0


class MetricsCollector:
    """In-process counters for the pull-style health surface."""

    def __init__(self, latency_window: int = 100) -> None:
        self.started_at = time.monotonic()
        self.blocks_processed = 0
        self.chunks_processed = 0
        self.processing_time_s = 0.0
        self.rpc_requests = 0
        self.rpc_failures = 0
        self._latencies: deque[float] = deque(maxlen=latency_window)
        self._users: dict[str, UserStats] = {}

    def user(self, user_id: str) -> UserStats:
        stats = self._users.get(user_id)
        if stats is None:
            stats = self._users[user_id] = UserStats()
        return stats

    def record_rpc(self, success: bool, latency_ms: float) -> None:
        self.rpc_requests += 1
        if not success:
            self.rpc_failures += 1
        self._latencies.append(latency_ms)

    def record_chunk(self, user_id: str, blocks: int, seconds: float) -> None:
        self.blocks_processed += blocks
        self.chunks_processed += 1
        self.processing_time_s += seconds
        u = self.user(user_id)
        u.blocks_processed += blocks
        u.chunks_processed += 1
        u.processing_time_s += seconds

    def record_error(self, user_id: str) -> None:
        self.user(user_id).errors += 1

    def get_metrics(self) -> dict[str, Any]:
        uptime = time.monotonic() - self.started_at
        return {
            "blocks_processed": self.blocks_processed,
            "chunks_processed": self.chunks_processed,
            "rpc_requests": self.rpc_requests,
            "rpc_failures": self.rpc_failures,
            "blocks_per_second": round(self.blocks_processed / uptime, 2) if uptime > 0 else 0.0,
            "avg_chunk_seconds": round(self.processing_time_s / self.chunks_processed, 3) if self.chunks_processed else 0.0,
            "rpc_success_rate": (
                round(100.0 * (self.rpc_requests - self.rpc_failures) / self.rpc_requests, 2)
                if self.rpc_requests else 100.0
            ),
            "avg_rpc_latency_ms": round(sum(self._latencies) / len(self._latencies), 2) if self._latencies else 0.0,
            "uptime_s": round(uptime, 1),
        }

    def get_user_stats(self, user_id: str) -> UserStats | None:
        return self._users.get(user_id)
