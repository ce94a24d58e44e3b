"""
scrapegate/models/marketplace_rate.py

Per-marketplace rate shaping config, the live metrics it is checked
against and the resulting decision.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class MarketplaceRateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    max_concurrency: int
    jobs_per_minute: int
    error_threshold: float
    cooldown_seconds: int
    cooldown_until: Optional[datetime] = None


class RateOverrides(BaseModel):
    """Demo-mode limits; unset fields leave the config value alone."""
    model_config = ConfigDict(frozen=True)

    max_concurrency: Optional[int] = None
    jobs_per_minute: Optional[int] = None
    error_threshold: Optional[float] = None
    cooldown_seconds: Optional[int] = None


class MarketplaceRateMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    running: int = 0
    jobs_per_minute: int = 0
    error_rate_percent: float = 0.0


class MarketplaceRateDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    cooldown_until: Optional[datetime] = None
