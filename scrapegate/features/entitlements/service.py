"""
scrapegate/features/entitlements/service.py

Tier -> entitlements snapshot, plus total validation of the snapshots the
guardrail chain consumes.

Handles:
- Deterministic snapshots (same tier, equal snapshot)
- Unknown tiers fail fast (UnknownTierError), never default to free
- Validation returns Valid | Invalid instead of raising
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from scrapegate.models.entitlements import ConcurrencySnapshot, EntitlementsSnapshot, TierGuardrail
from scrapegate.models.telemetry import UsageSnapshot
from scrapegate.models.tier import TierKey, parse_tier
from scrapegate.models.validation import Invalid, Valid, Validation

ENTITLEMENTS_VERSION = 1

# Per-tier quotas (no tier key / version; merged in by resolve_entitlements)
TIER_ENTITLEMENTS: Dict[TierKey, Dict[str, Union[int, float]]] = {
    TierKey.FREE: {
        "max_concurrency_user": 1,
        "max_monitors": 3,
        "max_boosted_monitors": 0,
        "refresh_interval_floor_seconds": 43200,
        "max_daily_runs": 8,
        "max_proxy_gb_per_day": 0.2,
    },
    TierKey.BASIC: {
        "max_concurrency_user": 2,
        "max_monitors": 25,
        "max_boosted_monitors": 2,
        "refresh_interval_floor_seconds": 43200,
        "max_daily_runs": 40,
        "max_proxy_gb_per_day": 1.0,
    },
    TierKey.PRO: {
        "max_concurrency_user": 3,
        "max_monitors": 60,
        "max_boosted_monitors": 6,
        "refresh_interval_floor_seconds": 21600,
        "max_daily_runs": 120,
        "max_proxy_gb_per_day": 3.0,
    },
    TierKey.ELITE: {
        "max_concurrency_user": 5,
        "max_monitors": 100,
        "max_boosted_monitors": 12,
        "refresh_interval_floor_seconds": 10800,
        "max_daily_runs": 240,
        "max_proxy_gb_per_day": 7.5,
    },
    TierKey.ENTERPRISE: {
        "max_concurrency_user": 8,
        "max_monitors": 180,
        "max_boosted_monitors": 30,
        "refresh_interval_floor_seconds": 7200,
        "max_daily_runs": 600,
        "max_proxy_gb_per_day": 20.0,
    },
}

TIER_GUARDRAILS: Dict[TierKey, TierGuardrail] = {
    tier: TierGuardrail(
        max_full_scrapes_per_day=int(quotas["max_daily_runs"]),
        max_proxy_gb_per_day=float(quotas["max_proxy_gb_per_day"]),
    )
    for tier, quotas in TIER_ENTITLEMENTS.items()
}


def resolve_entitlements(tier: Union[str, TierKey]) -> EntitlementsSnapshot:
    """
    Return the frozen entitlements snapshot for a tier.

    Raises:
        UnknownTierError: if tier is not one of the known tier keys
    """
    key = parse_tier(tier)
    return EntitlementsSnapshot(
        tier_key=key,
        entitlements_version=ENTITLEMENTS_VERSION,
        **TIER_ENTITLEMENTS[key],
    )


get_entitlements_for_tier = resolve_entitlements


def get_tier_guardrail(tier: Union[str, TierKey]) -> TierGuardrail:
    return TIER_GUARDRAILS[parse_tier(tier)]


def resolve_concurrency_snapshot(entitlements: EntitlementsSnapshot) -> ConcurrencySnapshot:
    return ConcurrencySnapshot(
        max_concurrent_jobs=entitlements.max_concurrency_user,
        max_marketplace_parallelism=entitlements.max_concurrency_user,
        max_boosted_jobs=entitlements.max_boosted_monitors,
    )


def _normalize_now(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _non_finite_field(model: BaseModel, fields) -> Optional[str]:
    for name in fields:
        value = getattr(model, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            return name
    return None


_ENTITLEMENT_NUMERIC_FIELDS = (
    "max_concurrency_user",
    "max_monitors",
    "max_boosted_monitors",
    "refresh_interval_floor_seconds",
    "max_daily_runs",
    "max_proxy_gb_per_day",
)

_USAGE_NUMERIC_FIELDS = ("running_jobs", "daily_runs", "proxy_gb_today")


def validate_entitlements(obj: Any) -> Validation[EntitlementsSnapshot]:
    """Total check: a complete snapshot with finite numbers, or the reason it isn't."""
    if obj is None:
        return Invalid("entitlements_missing")
    if isinstance(obj, EntitlementsSnapshot):
        snapshot = obj
    else:
        try:
            snapshot = EntitlementsSnapshot.model_validate(obj)
        except ValidationError as exc:
            return Invalid(f"entitlements_malformed: {exc.error_count()} error(s)")
    bad = _non_finite_field(snapshot, _ENTITLEMENT_NUMERIC_FIELDS)
    if bad:
        return Invalid(f"entitlements_non_finite: {bad}")
    return Valid(snapshot)


def validate_usage_snapshot(obj: Any) -> Validation[UsageSnapshot]:
    if obj is None:
        return Invalid("usage_missing")
    if isinstance(obj, UsageSnapshot):
        snapshot = obj
    else:
        try:
            snapshot = UsageSnapshot.model_validate(obj)
        except ValidationError as exc:
            return Invalid(f"usage_malformed: {exc.error_count()} error(s)")
    bad = _non_finite_field(snapshot, _USAGE_NUMERIC_FIELDS)
    if bad:
        return Invalid(f"usage_non_finite: {bad}")
    if snapshot.last_run_at is not None:
        snapshot = snapshot.model_copy(update={"last_run_at": _normalize_now(snapshot.last_run_at)})
    return Valid(snapshot)


def validate_now(now: Any) -> Validation[datetime]:
    if not isinstance(now, datetime):
        return Invalid("now_invalid")
    return Valid(_normalize_now(now))
