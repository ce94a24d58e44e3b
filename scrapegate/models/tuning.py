"""
scrapegate/models/tuning.py

Static per-marketplace rate tuning and its resolved, telemetry-damped form.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from scrapegate.models.tier import TierKey

ProxyProfile = Literal["datacenter", "residential", "mixed"]


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int
    backoff_sec: float
    jitter_pct: float


class KillSwitchFlags(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    global_: bool = Field(default=False, alias="global")
    countries: Dict[str, bool] = Field(default_factory=dict)


class MarketplaceTuning(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_concurrency_by_tier: Dict[TierKey, int]
    max_rps_by_tier: Dict[TierKey, float]
    proxy_profile: ProxyProfile
    kill_switch: KillSwitchFlags = Field(default_factory=KillSwitchFlags)
    degrade_bias: float
    retry_policy: RetryPolicy


class TelemetryRatios(BaseModel):
    """Share of today's caps already consumed (0 when the cap is 0)."""
    model_config = ConfigDict(frozen=True)

    proxy_usage_ratio: float = 0.0
    full_scrape_ratio: float = 0.0


class ResolvedTuning(BaseModel):
    model_config = ConfigDict(frozen=True)

    marketplace: str
    tier: TierKey
    enabled: bool
    reason: Optional[str] = None
    concurrency: int
    max_rps: float
    proxy_profile: ProxyProfile
    degrade_bias: float
    retry_policy: RetryPolicy
    backoff_level: Optional[Literal["0.75", "0.9"]] = None
