"""Request throttling and abuse signals consulted before a scan starts."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Literal
from urllib.parse import urlparse

from ..domain.errors import ConfigError, RateLimitExceededError
from ..ports.quota import QuotaDecision, QuotaProvider

log = logging.getLogger(__name__)

RequestKind = Literal["scan_requested", "scan_started", "scan_failed", "scan_completed", "rate_limited"]


def validate_secure_endpoint(url: str, *, production: bool = False) -> bool:
    """Require https in production; warn about plain-text endpoints otherwise."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid RPC endpoint URL: {url!r}")
    if parsed.scheme != "https":
        if production:
            raise ConfigError(f"Insecure RPC endpoint: {url}. HTTPS required in production.")
        log.warning("insecure RPC endpoint: %s", url)
    return True


@dataclass(slots=True, frozen=True)
class RequestEvent:
    user_id: str
    kind: RequestKind
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(slots=True, frozen=True)
class AnomalyReport:
    subject: str
    reason: str
    expected: float | None = None
    actual: float | None = None


class AnomalyDetector:
    """
    Tracks request patterns per user and event volume per contract.

    Detections are advisory: they feed the limiter and operator logs, they never
    stop a scan on their own.
    """

    def __init__(
        self,
        *,
        burst_window: float = 60.0,
        burst_threshold: int = 20,
        failure_window: float = 600.0,
        failure_threshold: int = 5,
        baseline_size: int = 100,
        min_baseline: int = 10,
        max_deviation: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.burst_window = burst_window
        self.burst_threshold = burst_threshold
        self.failure_window = failure_window
        self.failure_threshold = failure_threshold
        self.min_baseline = min_baseline
        self.max_deviation = max_deviation
        self._clock = clock
        self._requests: dict[str, deque[float]] = defaultdict(deque)
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._baseline: dict[str, deque[int]] = defaultdict(lambda: deque(maxlen=baseline_size))
        self._flagged: dict[str, str] = {}

    def record(self, event: RequestEvent) -> None:
        if event.kind in ("scan_requested", "rate_limited"):
            self._requests[event.user_id].append(event.timestamp)
        elif event.kind == "scan_failed":
            self._failures[event.user_id].append(event.timestamp)
        reason = self._evaluate(event.user_id)
        if reason and self._flagged.get(event.user_id) != reason:
            log.warning("user %s flagged: %s", event.user_id, reason)
        if reason:
            self._flagged[event.user_id] = reason
        else:
            self._flagged.pop(event.user_id, None)

    @staticmethod
    def _trim(q: deque[float], now: float, window: float) -> int:
        while q and now - q[0] > window:
            q.popleft()
        return len(q)

    def _evaluate(self, user_id: str) -> str | None:
        now = self._clock()
        bursts = self._trim(self._requests[user_id], now, self.burst_window)
        if bursts > self.burst_threshold:
            return f"{bursts} requests within {self.burst_window:.0f}s"
        failures = self._trim(self._failures[user_id], now, self.failure_window)
        if failures >= self.failure_threshold:
            return f"{failures} failed scans within {self.failure_window:.0f}s"
        return None

    def is_anomalous(self, user_id: str) -> bool:
        reason = self._evaluate(user_id)
        if reason is None:
            self._flagged.pop(user_id, None)
            return False
        self._flagged[user_id] = reason
        return True

    def flagged(self) -> dict[str, str]:
        return dict(self._flagged)

    def observe_chunk(self, contract_address: str, event_count: int) -> AnomalyReport | None:
        """Compare a chunk's event count with the contract's recent baseline, then add it."""
        samples = self._baseline[contract_address]
        report = None
        if len(samples) >= self.min_baseline:
            mean = sum(samples) / len(samples)
            std = math.sqrt(sum((n - mean) ** 2 for n in samples) / len(samples))
            deviation = abs(event_count - mean) / (std or 1.0)
            if deviation > self.max_deviation:
                report = AnomalyReport(
                    subject=contract_address,
                    reason=f"event count deviates {deviation:.2f} standard deviations",
                    expected=round(mean, 2),
                    actual=event_count,
                )
                log.warning("anomaly on %s: %s (expected ~%s, got %d)",
                            contract_address, report.reason, report.expected, event_count)
        samples.append(event_count)
        return report


class SubscriptionLimiter:
    """Gatekeeper in front of the quota provider; admission is check-and-acquire under one lock."""

    def __init__(self, provider: QuotaProvider, anomaly_detector: AnomalyDetector | None = None) -> None:
        self.provider = provider
        self.anomaly_detector = anomaly_detector
        self._lock = asyncio.Lock()

    def _cap_for(self, user_id: str) -> int | None:
        if self.anomaly_detector is not None and self.anomaly_detector.is_anomalous(user_id):
            return 1
        return None

    async def check_allowed(self, user_id: str, tier: str) -> QuotaDecision:
        decision = await self.provider.check(user_id, tier, max_concurrent=self._cap_for(user_id))
        if not decision.allowed:
            if self.anomaly_detector is not None:
                self.anomaly_detector.record(RequestEvent(user_id, "rate_limited"))
            raise RateLimitExceededError(user_id, tier, decision.reason or "quota exhausted", decision.remaining)
        return decision

    async def admit(self, user_id: str, tier: str) -> QuotaDecision:
        async with self._lock:
            decision = await self.check_allowed(user_id, tier)
            await self.provider.acquire(user_id)
            return decision

    async def release(self, user_id: str) -> None:
        await self.provider.release(user_id)
