"""
scrapegate/features/tuning/service.py

Per-marketplace concurrency / RPS ceilings with kill switches and
telemetry-driven backoff.

Backoff smooths load as a tenant approaches its caps; hard stops are the
guardrail chain's job.
"""

import logging
from typing import Dict, Optional, Union

from scrapegate.core.metrics import tuning_backoff_total
from scrapegate.models.entitlements import EntitlementsSnapshot
from scrapegate.models.telemetry import RecentTelemetry
from scrapegate.models.tier import TierKey, parse_tier
from scrapegate.models.tuning import MarketplaceTuning, ResolvedTuning, RetryPolicy, TelemetryRatios

logger = logging.getLogger(__name__)

HEAVY_BACKOFF_RATIO = 0.9
LIGHT_BACKOFF_RATIO = 0.75


def _by_tier(free, basic, pro, elite, enterprise) -> Dict[TierKey, float]:
    return {
        TierKey.FREE: free,
        TierKey.BASIC: basic,
        TierKey.PRO: pro,
        TierKey.ELITE: elite,
        TierKey.ENTERPRISE: enterprise,
    }


MARKETPLACE_TUNING: Dict[str, MarketplaceTuning] = {
    "facebook": MarketplaceTuning(
        default_concurrency_by_tier=_by_tier(1, 1, 2, 3, 4),
        max_rps_by_tier=_by_tier(0.3, 0.5, 0.8, 1.2, 1.5),
        proxy_profile="residential",
        degrade_bias=0.85,
        retry_policy=RetryPolicy(max_retries=3, backoff_sec=45, jitter_pct=0.2),
    ),
    "vinted": MarketplaceTuning(
        default_concurrency_by_tier=_by_tier(1, 2, 3, 4, 6),
        max_rps_by_tier=_by_tier(0.6, 0.8, 1.0, 1.4, 1.8),
        proxy_profile="mixed",
        degrade_bias=0.55,
        retry_policy=RetryPolicy(max_retries=4, backoff_sec=35, jitter_pct=0.2),
    ),
    "ebay": MarketplaceTuning(
        default_concurrency_by_tier=_by_tier(1, 2, 3, 4, 6),
        max_rps_by_tier=_by_tier(0.8, 1.0, 1.4, 1.8, 2.2),
        proxy_profile="datacenter",
        degrade_bias=0.4,
        retry_policy=RetryPolicy(max_retries=3, backoff_sec=25, jitter_pct=0.15),
    ),
    "gumtree": MarketplaceTuning(
        default_concurrency_by_tier=_by_tier(1, 2, 3, 4, 5),
        max_rps_by_tier=_by_tier(0.7, 0.9, 1.2, 1.6, 2.0),
        proxy_profile="datacenter",
        degrade_bias=0.45,
        retry_policy=RetryPolicy(max_retries=3, backoff_sec=30, jitter_pct=0.2),
    ),
}

DEFAULT_TUNING = MarketplaceTuning(
    default_concurrency_by_tier=_by_tier(1, 1, 2, 3, 4),
    max_rps_by_tier=_by_tier(0.5, 0.6, 0.8, 1.1, 1.3),
    proxy_profile="mixed",
    degrade_bias=0.6,
    retry_policy=RetryPolicy(max_retries=3, backoff_sec=30, jitter_pct=0.2),
)

DEFAULT_CONCURRENCY = 1
DEFAULT_MAX_RPS = 0.5


def get_marketplace_tuning(marketplace: str, table: Optional[Dict[str, MarketplaceTuning]] = None) -> MarketplaceTuning:
    """Static tuning for a marketplace; unknown marketplaces get DEFAULT_TUNING."""
    source = MARKETPLACE_TUNING if table is None else table
    return source.get(str(getattr(marketplace, "value", marketplace)), DEFAULT_TUNING)


def build_telemetry_snapshot(entitlements: EntitlementsSnapshot, telemetry: RecentTelemetry) -> TelemetryRatios:
    proxy_cap = entitlements.max_proxy_gb_per_day
    runs_cap = entitlements.max_daily_runs
    return TelemetryRatios(
        proxy_usage_ratio=telemetry.proxy_gb_estimated / proxy_cap if proxy_cap > 0 else 0.0,
        full_scrape_ratio=telemetry.full_runs / runs_cap if runs_cap > 0 else 0.0,
    )


def resolve_tuning(
    marketplace: str,
    tier: Union[str, TierKey],
    country: Optional[str] = None,
    telemetry_snapshot: Optional[TelemetryRatios] = None,
    table: Optional[Dict[str, MarketplaceTuning]] = None,
) -> ResolvedTuning:
    tier_key = parse_tier(tier)
    market = str(getattr(marketplace, "value", marketplace))
    tuning = get_marketplace_tuning(market, table)

    reason = None
    if tuning.kill_switch.global_:
        reason = "kill_switch_global"
    elif country and tuning.kill_switch.countries.get(country):
        reason = "kill_switch_country"

    concurrency = int(tuning.default_concurrency_by_tier.get(tier_key, DEFAULT_CONCURRENCY))
    max_rps = float(tuning.max_rps_by_tier.get(tier_key, DEFAULT_MAX_RPS))

    ratios = telemetry_snapshot or TelemetryRatios()
    pressure = max(ratios.proxy_usage_ratio, ratios.full_scrape_ratio)
    backoff_level = None
    if pressure >= HEAVY_BACKOFF_RATIO:
        concurrency = max(1, int(concurrency * 0.5))
        max_rps = max(0.2, max_rps * 0.5)
        backoff_level = "0.9"
    elif pressure >= LIGHT_BACKOFF_RATIO:
        concurrency = max(1, int(concurrency * 0.75))
        max_rps = max(0.3, max_rps * 0.75)
        backoff_level = "0.75"

    if backoff_level:
        tuning_backoff_total.inc({"marketplace": market, "level": backoff_level})
        logger.info(
            "[tuning] backoff applied",
            extra={"marketplace": market, "tier": tier_key.value, "level": backoff_level, "pressure": pressure},
        )

    return ResolvedTuning(
        marketplace=market,
        tier=tier_key,
        enabled=reason is None,
        reason=reason,
        concurrency=concurrency,
        max_rps=max_rps,
        proxy_profile=tuning.proxy_profile,
        degrade_bias=tuning.degrade_bias,
        retry_policy=tuning.retry_policy,
        backoff_level=backoff_level,
    )
