"""
scrapegate/models/telemetry.py

Usage and cost telemetry records.

- UsageSnapshot: read-only view handed to the guardrail chain per call.
- RecentTelemetry: today's counters for one (user, marketplace) plus cooldown.
- TelemetryCounters / TelemetryIncrement: stored counters and the delta
  applied after a decision is executed.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from scrapegate.models.tier import ActionKind, Marketplace


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    running_jobs: int
    daily_runs: int
    proxy_gb_today: float
    last_run_at: Optional[datetime] = None
    marketplace: Optional[Marketplace] = None


class RecentTelemetry(BaseModel):
    model_config = ConfigDict(frozen=True)

    full_runs: int = 0
    partial_runs: int = 0
    signal_checks: int = 0
    proxy_gb_estimated: float = 0.0
    cost_usd_estimated: float = 0.0
    cooldown_until: Optional[datetime] = None


class TelemetryCounters(BaseModel):
    model_config = ConfigDict(frozen=True)

    signal_checks: int = 0
    partial_fetches: int = 0
    full_scrapes: int = 0
    proxy_gb_estimated: float = 0.0
    cost_usd_estimated: float = 0.0


class TelemetryIncrement(TelemetryCounters):
    """Counter delta for one executed action (see build_telemetry_increment)."""

    action: ActionKind
    count: int = 1
