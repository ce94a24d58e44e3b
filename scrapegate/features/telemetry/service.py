"""
scrapegate/features/telemetry/service.py

Cost telemetry arithmetic: increments for executed actions, counter merge,
day keys and the Redis key layout. No I/O here; stores live in store.py.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from scrapegate.core.config import settings
from scrapegate.features.economics.model import CostModelTable
from scrapegate.features.economics.service import action_cost_usd, action_proxy_gb
from scrapegate.models.telemetry import TelemetryCounters, TelemetryIncrement
from scrapegate.models.tier import ActionKind, Marketplace, TierKey, parse_marketplace, parse_tier

# Counter field -> stored hash field / column name
TELEMETRY_FIELDS = {
    "signal_checks": "signal_checks",
    "partial_fetches": "partial_fetches",
    "full_scrapes": "full_scrapes",
    "proxy_gb_estimated": "proxy_gb_estimated",
    "cost_usd_estimated": "cost_usd_estimated",
}


def day_key(now: datetime) -> str:
    """UTC calendar day, YYYY-MM-DD."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def day_start(key: str) -> datetime:
    return datetime.strptime(key, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def build_telemetry_increment(
    marketplace: Union[str, Marketplace],
    action: ActionKind,
    count: int = 1,
    table: Optional[CostModelTable] = None,
) -> TelemetryIncrement:
    if count < 0:
        raise ValueError("count must be non-negative")
    action = ActionKind(action)
    return TelemetryIncrement(
        action=action,
        count=count,
        signal_checks=count if action is ActionKind.SIGNAL_CHECK else 0,
        partial_fetches=count if action is ActionKind.PARTIAL_FETCH else 0,
        full_scrapes=count if action is ActionKind.FULL_SCRAPE else 0,
        proxy_gb_estimated=action_proxy_gb(marketplace, action, count, table),
        cost_usd_estimated=action_cost_usd(marketplace, action, count, table),
    )


def empty_counters() -> TelemetryCounters:
    return TelemetryCounters()


def apply_telemetry_increment(base: TelemetryCounters, increment: TelemetryCounters) -> TelemetryCounters:
    return TelemetryCounters(
        signal_checks=base.signal_checks + increment.signal_checks,
        partial_fetches=base.partial_fetches + increment.partial_fetches,
        full_scrapes=base.full_scrapes + increment.full_scrapes,
        proxy_gb_estimated=base.proxy_gb_estimated + increment.proxy_gb_estimated,
        cost_usd_estimated=base.cost_usd_estimated + increment.cost_usd_estimated,
    )


def to_hash_increments(increment: TelemetryCounters) -> Dict[str, float]:
    return {field: getattr(increment, attr) for attr, field in TELEMETRY_FIELDS.items()}


@dataclass(frozen=True)
class TelemetryKeys:
    user_daily: str
    user_marketplace_daily: str
    tier_marketplace_daily: str


def telemetry_keys(
    user_id: str,
    tier: Union[str, TierKey],
    marketplace: Union[str, Marketplace],
    date_key: str,
    prefix: Optional[str] = None,
) -> TelemetryKeys:
    prefix = prefix or settings.TELEMETRY_KEY_PREFIX
    market = parse_marketplace(marketplace).value
    tier_value = parse_tier(tier).value
    return TelemetryKeys(
        user_daily=f"{prefix}:{user_id}:{date_key}",
        user_marketplace_daily=f"{prefix}:{user_id}:{market}:{date_key}",
        tier_marketplace_daily=f"{prefix}:{tier_value}:{market}:{date_key}",
    )
