"""
scrapegate/models/entitlements.py

Per-tier quota snapshots.

A snapshot is derived deterministically from a TierKey and never mutated;
a tier change produces a new snapshot.
"""

from pydantic import BaseModel, ConfigDict

from scrapegate.models.tier import TierKey


class EntitlementsSnapshot(BaseModel):
    """
    Quotas for one tier.

    Fields:
    - max_concurrency_user: running jobs before THROTTLE
    - max_monitors / max_boosted_monitors: monitor slots
    - refresh_interval_floor_seconds: minimum gap between runs of one monitor
    - max_daily_runs: full runs per day (HARD_STOP)
    - max_proxy_gb_per_day: proxy bandwidth per day (HARD_STOP)
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    tier_key: TierKey
    max_concurrency_user: int
    max_monitors: int
    max_boosted_monitors: int
    refresh_interval_floor_seconds: float
    max_daily_runs: int
    max_proxy_gb_per_day: float
    entitlements_version: int


class ConcurrencySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_concurrent_jobs: int
    max_marketplace_parallelism: int
    max_boosted_jobs: int


class TierGuardrail(BaseModel):
    """Daily caps consulted by the budget ladder."""
    model_config = ConfigDict(frozen=True)

    max_full_scrapes_per_day: int
    max_proxy_gb_per_day: float
