# contractscan/ports/quota.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True, frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: dict[str, int] = field(default_factory=dict)   # -1 means unlimited
    reason: str | None = None


class QuotaProvider(Protocol):
    """Port to the external owner of tier limits and current usage."""

    async def check(self, user_id: str, tier: str, *, max_concurrent: int | None = None) -> QuotaDecision:
        """Decide whether `user_id` may start one more scan right now."""

    async def acquire(self, user_id: str) -> None:
        """Record that a scan for `user_id` started."""

    async def release(self, user_id: str) -> None:
        """Record that a running scan for `user_id` finished."""
