"""
scrapegate/features/guardrails/service.py

Pricing guardrails: entitlements + usage snapshot + now -> ALLOW / THROTTLE /
BLOCK with a reason code. Invalid input of any kind is BLOCK /
ENTITLEMENTS_MISSING (fail closed).

Checks run in order and the first match wins. Hard quota exhaustion and
the refresh floor outrank the soft concurrency and cost throttles.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from scrapegate.core.metrics import guardrail_decisions_total
from scrapegate.features.economics.service import estimate_daily_cost_usd, tier_daily_cost_ceiling_usd
from scrapegate.features.entitlements.service import (
    get_tier_guardrail,
    validate_entitlements,
    validate_now,
    validate_usage_snapshot,
)
from scrapegate.models.guardrails import (
    Allowed,
    DailyCostLimitExceeded,
    EntitlementsMissing,
    GuardrailDecision,
    GuardrailResult,
    MaxConcurrencyExceeded,
    MaxDailyRunsExceeded,
    MaxProxyGbExceeded,
    RefreshIntervalFloor,
)
from scrapegate.models.telemetry import RecentTelemetry
from scrapegate.models.tier import TierKey, parse_tier
from scrapegate.models.validation import Invalid

logger = logging.getLogger(__name__)


def evaluate_pricing_guardrails(entitlements: Any, usage_snapshot: Any, now: Any) -> GuardrailResult:
    result = _evaluate(entitlements, usage_snapshot, now)
    guardrail_decisions_total.inc({"decision": result.decision, "reason_code": result.reason_code})
    if result.decision != GuardrailDecision.ALLOW:
        logger.info(
            f"[guardrails] {result.decision}",
            extra={"reason_code": result.reason_code},
        )
    return result


def _evaluate(entitlements: Any, usage_snapshot: Any, now: Any) -> GuardrailResult:
    checked_entitlements = validate_entitlements(entitlements)
    if isinstance(checked_entitlements, Invalid):
        return EntitlementsMissing(invalid_reason=checked_entitlements.reason)
    checked_usage = validate_usage_snapshot(usage_snapshot)
    if isinstance(checked_usage, Invalid):
        return EntitlementsMissing(invalid_reason=checked_usage.reason)
    checked_now = validate_now(now)
    if isinstance(checked_now, Invalid):
        return EntitlementsMissing(invalid_reason=checked_now.reason)

    ent = checked_entitlements.value
    usage = checked_usage.value
    current = checked_now.value

    if usage.daily_runs >= ent.max_daily_runs:
        return MaxDailyRunsExceeded(limit=ent.max_daily_runs, observed=usage.daily_runs)

    if usage.proxy_gb_today >= ent.max_proxy_gb_per_day:
        return MaxProxyGbExceeded(limit=ent.max_proxy_gb_per_day, observed=usage.proxy_gb_today)

    if usage.last_run_at is not None:
        elapsed = (current - usage.last_run_at).total_seconds()
        if elapsed < ent.refresh_interval_floor_seconds:
            return RefreshIntervalFloor(
                floor_seconds=ent.refresh_interval_floor_seconds,
                elapsed_seconds=elapsed,
                next_allowed_at=usage.last_run_at + timedelta(seconds=ent.refresh_interval_floor_seconds),
            )

    if usage.running_jobs >= ent.max_concurrency_user:
        return MaxConcurrencyExceeded(limit=ent.max_concurrency_user, observed=usage.running_jobs)

    ceiling = tier_daily_cost_ceiling_usd(ent.tier_key)
    estimated = estimate_daily_cost_usd(usage.marketplace, usage.daily_runs)
    if estimated > ceiling:
        return DailyCostLimitExceeded(ceiling_usd=ceiling, estimated_usd=estimated)

    return Allowed()


class GateMode(str, Enum):
    NORMAL = "NORMAL"
    THROTTLED = "THROTTLED"
    BLOCKED = "BLOCKED"


_GATE_MODES = {
    GuardrailDecision.ALLOW: GateMode.NORMAL,
    GuardrailDecision.THROTTLE: GateMode.THROTTLED,
    GuardrailDecision.BLOCK: GateMode.BLOCKED,
}


@dataclass(frozen=True)
class EnforcementGateDecision:
    allowed: bool
    enforcement_mode: GateMode
    result: GuardrailResult
    snapshot: Dict[str, Any]

    @property
    def reason_code(self) -> str:
        return self.result.reason_code

    @property
    def violated_limit(self) -> Optional[str]:
        return getattr(self.result, "violated_limit", None)

    @property
    def suggested_action(self) -> Optional[str]:
        return getattr(self.result, "suggested_action", None)


def build_usage_snapshot(
    usage_telemetry: Optional[RecentTelemetry],
    running_jobs: Any,
    last_run_at: Optional[datetime] = None,
    marketplace: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Usage snapshot from today's telemetry plus job context; None if incomplete."""
    if usage_telemetry is None or running_jobs is None:
        return None
    return {
        "running_jobs": running_jobs,
        "daily_runs": usage_telemetry.full_runs,
        "proxy_gb_today": usage_telemetry.proxy_gb_estimated,
        "last_run_at": last_run_at,
        "marketplace": marketplace,
    }


def to_gate_decision(result: GuardrailResult, entitlements: Any, usage: Optional[Dict[str, Any]]) -> EnforcementGateDecision:
    mode = _GATE_MODES[GuardrailDecision(result.decision)]
    entitlements_json = entitlements.model_dump(mode="json") if hasattr(entitlements, "model_dump") else entitlements
    return EnforcementGateDecision(
        allowed=mode != GateMode.BLOCKED,
        enforcement_mode=mode,
        result=result,
        snapshot={"entitlements": entitlements_json, "usage": usage},
    )


def evaluate_enforcement_gate(
    entitlements: Any,
    usage_telemetry: Optional[RecentTelemetry],
    *,
    running_jobs: Any,
    now: datetime,
    monitor_last_run_at: Optional[datetime] = None,
    marketplace: Optional[str] = None,
) -> EnforcementGateDecision:
    usage = build_usage_snapshot(usage_telemetry, running_jobs, monitor_last_run_at, marketplace)
    result = evaluate_pricing_guardrails(entitlements, usage, now)
    return to_gate_decision(result, entitlements, usage)


class GuardrailAction(str, Enum):
    SIGNAL_ONLY = "SIGNAL_ONLY"
    PARTIAL_FETCH = "PARTIAL_FETCH"
    FULL_SCRAPE = "FULL_SCRAPE"


def enforce_guardrails(tier: TierKey, full_scrapes_today: float, proxy_gb_today: float, requested: GuardrailAction) -> GuardrailAction:
    """Simple ladder: proxy cap forces signal-only, full-scrape cap forces partial."""
    limits = get_tier_guardrail(parse_tier(tier))
    requested = GuardrailAction(requested)
    if proxy_gb_today >= limits.max_proxy_gb_per_day:
        return GuardrailAction.SIGNAL_ONLY
    if requested is GuardrailAction.FULL_SCRAPE and full_scrapes_today >= limits.max_full_scrapes_per_day:
        return GuardrailAction.PARTIAL_FETCH
    return requested
