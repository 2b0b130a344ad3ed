from __future__ import annotations
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class TierLimits:
    name: str
    max_concurrent_scans: int          # -1 = unlimited
    scans_per_period: int              # -1 = unlimited
    historical_days: int               # -1 = full history from deployment
    continuous_sync: bool = False


SUBSCRIPTION_TIERS: dict[str, TierLimits] = {
    "free": TierLimits("Free", max_concurrent_scans=1, scans_per_period=10, historical_days=7),
    "starter": TierLimits("Starter", max_concurrent_scans=3, scans_per_period=50, historical_days=30, continuous_sync=True),
    "pro": TierLimits("Pro", max_concurrent_scans=10, scans_per_period=100, historical_days=90, continuous_sync=True),
    "enterprise": TierLimits("Enterprise", max_concurrent_scans=-1, scans_per_period=-1, historical_days=-1, continuous_sync=True),
}


def tier_limits(tier: str) -> TierLimits | None:
    return SUBSCRIPTION_TIERS.get(tier.lower())
