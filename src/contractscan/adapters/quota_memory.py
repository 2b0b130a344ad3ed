from __future__ import annotations
import asyncio
import time
from collections import defaultdict, deque
from typing import Callable

from ..domain.tiers import tier_limits
from ..ports.quota import QuotaDecision, QuotaProvider


class InMemoryQuotaProvider(QuotaProvider):
    """Tier quotas kept in process memory, scans counted over a sliding period."""

    def __init__(self, period_s: float = 30 * 86_400, clock: Callable[[], float] = time.monotonic) -> None:
        self.period_s = period_s
        self.clock = clock
        self._running: dict[str, int] = defaultdict(int)
        self._started: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def _prune(self, user_id: str, now: float) -> deque[float]:
        starts = self._started[user_id]
        while starts and now - starts[0] >= self.period_s:
            starts.popleft()
        return starts

    async def check(self, user_id: str, tier: str, *, max_concurrent: int | None = None) -> QuotaDecision:
        limits = tier_limits(tier)
        if limits is None:
            return QuotaDecision(False, reason=f"unknown tier {tier!r}")
        async with self._lock:
            starts = self._prune(user_id, self.clock())
            running = self._running[user_id]
        concurrent_cap = limits.max_concurrent_scans
        if max_concurrent is not None:
            concurrent_cap = max_concurrent if concurrent_cap < 0 else min(concurrent_cap, max_concurrent)
        remaining = {
            "concurrent_scans": -1 if concurrent_cap < 0 else max(0, concurrent_cap - running),
            "scans_this_period": -1 if limits.scans_per_period < 0 else max(0, limits.scans_per_period - len(starts)),
        }
        if remaining["concurrent_scans"] == 0:
            return QuotaDecision(False, remaining, f"{running} scan(s) already running (limit {concurrent_cap})")
        if remaining["scans_this_period"] == 0:
            return QuotaDecision(False, remaining, f"period quota of {limits.scans_per_period} scans used")
        return QuotaDecision(True, remaining)

    async def acquire(self, user_id: str) -> None:
        async with self._lock:
            self._running[user_id] += 1
            self._started[user_id].append(self.clock())

    async def release(self, user_id: str) -> None:
        async with self._lock:
            if self._running[user_id] > 0:
                self._running[user_id] -= 1

    async def reset(self, user_id: str) -> None:
        async with self._lock:
            self._running.pop(user_id, None)
            self._started.pop(user_id, None)
