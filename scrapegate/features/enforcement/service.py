"""Runtime enforcement: cooldown, guardrail chain and budget ladder in one decision."""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import List, Optional, Tuple, Union

from scrapegate.core.metrics import enforcement_decisions_total
from scrapegate.features.budget.service import BudgetDecision, BudgetUsage, ProjectedAction, walk_budget_ladder
from scrapegate.features.economics.model import CostModelTable, cost_model_provider
from scrapegate.features.economics.service import action_cost_usd, tier_daily_cost_ceiling_usd
from scrapegate.features.enforcement.contracts import EnforcementInput, input_hash
from scrapegate.features.entitlements.service import ENTITLEMENTS_VERSION, _normalize_now, get_tier_guardrail
from scrapegate.features.guardrails.service import build_usage_snapshot, evaluate_pricing_guardrails
from scrapegate.features.telemetry.service import build_telemetry_increment
from scrapegate.models.decision import DecisionAudit, EnforcementDecision
from scrapegate.models.guardrails import (
    EntitlementsMissing,
    GuardrailResult,
    MaxDailyRunsExceeded,
    MaxProxyGbExceeded,
    RefreshIntervalFloor,
)
from scrapegate.models.telemetry import RecentTelemetry
from scrapegate.models.tier import ActionKind, EnforcementMode, TierKey

logger = logging.getLogger(__name__)

REASON_COOLDOWN_ACTIVE = "cooldown_active"
REASON_FULL_SCRAPE_CAP = "full_scrape_cap"
REASON_PROXY_GB_CAP = "proxy_gb_cap"
REASON_BUDGET_DENIED = "budget_denied"
REASON_BUDGET_DOWNGRADE = "budget_downgrade"
REASON_ALLOWED = "allowed"
REASON_ENTITLEMENTS_MISSING = "entitlements_missing"
REASON_REFRESH_INTERVAL_FLOOR = "refresh_interval_floor"


def detect_guardrail_hits(tier: TierKey, telemetry: RecentTelemetry) -> List[str]:
    limits = get_tier_guardrail(tier)
    hits = []
    if telemetry.full_runs >= limits.max_full_scrapes_per_day:
        hits.append(REASON_FULL_SCRAPE_CAP)
    if telemetry.proxy_gb_estimated >= limits.max_proxy_gb_per_day:
        hits.append(REASON_PROXY_GB_CAP)
    return hits


def budget_remaining_usd(payload: EnforcementInput, table: Optional[CostModelTable] = None) -> float:
    if payload.budget_remaining_usd is not None:
        return payload.budget_remaining_usd
    ceiling = tier_daily_cost_ceiling_usd(payload.tier, table)
    return ceiling - payload.recent_telemetry.cost_usd_estimated


def _affordable_downgrade(
    payload: EnforcementInput, start_action: ActionKind, remaining: float, table: CostModelTable
) -> ActionKind:
    action = start_action.downgrade()
    if not math.isfinite(remaining):
        return action
    # signal_check is affordable here, the ladder denies otherwise
    while action is not ActionKind.SIGNAL_CHECK and action_cost_usd(payload.marketplace, action, table=table) > remaining:
        action = action.downgrade()
    return action


def _admission_ceiling(
    payload: EnforcementInput, now: datetime
) -> Tuple[Optional[GuardrailResult], Optional[ActionKind], List[str]]:
    """
    Run the hard guardrail chain for the admission context.

    Returns the guardrail result, the most expensive action still allowed
    (None when the result blocks outright) and the codes to record as hits.
    """
    admission = payload.admission
    usage = build_usage_snapshot(
        payload.recent_telemetry,
        admission.running_jobs,
        admission.last_run_at,
        payload.marketplace.value,
    )
    result = evaluate_pricing_guardrails(admission.entitlements, usage, now)
    code = result.reason_code.lower()

    if isinstance(result, (EntitlementsMissing, RefreshIntervalFloor)):
        return result, None, [code]
    if isinstance(result, MaxProxyGbExceeded):
        return result, ActionKind.SIGNAL_CHECK, [code]
    if isinstance(result, MaxDailyRunsExceeded):
        return result, ActionKind.PARTIAL_FETCH, [code]
    if result.decision == "THROTTLE":
        return result, ActionKind.FULL_SCRAPE, [code]
    return result, ActionKind.FULL_SCRAPE, []


def _blocked(
    payload: EnforcementInput,
    reason_code: str,
    guardrails_hit: List[str],
    digest: str,
    version: str,
    *,
    next_allowed_at: Optional[datetime] = None,
    guardrail: Optional[GuardrailResult] = None,
) -> EnforcementDecision:
    return EnforcementDecision(
        allowed=False,
        mode=EnforcementMode.BLOCK,
        reason_code=reason_code,
        counters_delta=None,
        next_allowed_at=next_allowed_at,
        audit=DecisionAudit(
            guardrails_hit=guardrails_hit,
            degrade_path=[payload.requested_mode.value, EnforcementMode.BLOCK.value],
            cost_model_version=version,
            entitlements_version=ENTITLEMENTS_VERSION,
            input_hash=digest,
            guardrail=guardrail,
        ),
    )


def evaluate_enforcement(
    payload: Union[EnforcementInput, dict],
    table: Optional[CostModelTable] = None,
) -> EnforcementDecision:
    """
    Decide FULL / PARTIAL / SIGNAL / BLOCK for one requested action.

    Order: active cooldown short-circuits; then, when an admission context
    is given, the hard guardrail chain (missing entitlements and the refresh
    floor block, exhausted quotas cap the action); then the budget ladder.
    A DOWNGRADE steps one rung down from the action entering the ladder, and
    further while a finite remaining budget cannot cover the action.
    The result is never more expensive than the request.
    """
    if not isinstance(payload, EnforcementInput):
        payload = EnforcementInput.model_validate(payload)
    active_table = table or cost_model_provider.get()
    version = active_table.version
    digest = input_hash(payload)
    now = _normalize_now(payload.now)
    telemetry = payload.recent_telemetry

    decision = _decide(payload, now, telemetry, active_table, version, digest)

    enforcement_decisions_total.inc({"mode": decision.mode.value, "reason_code": decision.reason_code})
    if not decision.allowed:
        logger.info(
            "[enforcement] BLOCK",
            extra={
                "user_id": payload.user_id,
                "marketplace": payload.marketplace.value,
                "tier": payload.tier.value,
                "reason_code": decision.reason_code,
            },
        )
    elif decision.reason_code == REASON_BUDGET_DOWNGRADE:
        logger.info(
            "[enforcement] DOWNGRADE",
            extra={
                "user_id": payload.user_id,
                "marketplace": payload.marketplace.value,
                "degrade_path": decision.audit.degrade_path,
            },
        )
    return decision


def _decide(
    payload: EnforcementInput,
    now: datetime,
    telemetry: RecentTelemetry,
    table: CostModelTable,
    version: str,
    digest: str,
) -> EnforcementDecision:
    cooldown_until = telemetry.cooldown_until
    if cooldown_until is not None:
        cooldown_until = _normalize_now(cooldown_until)
        if cooldown_until > now:
            return _blocked(
                payload,
                REASON_COOLDOWN_ACTIVE,
                ["cooldown"],
                digest,
                version,
                next_allowed_at=cooldown_until,
            )

    requested_action = payload.requested_mode.to_action()
    start_action = requested_action
    guardrail = None
    admission_hits: List[str] = []

    if payload.admission is not None:
        guardrail, ceiling, admission_hits = _admission_ceiling(payload, now)
        if ceiling is None:
            if isinstance(guardrail, RefreshIntervalFloor):
                return _blocked(
                    payload,
                    REASON_REFRESH_INTERVAL_FLOOR,
                    admission_hits,
                    digest,
                    version,
                    next_allowed_at=guardrail.next_allowed_at,
                    guardrail=guardrail,
                )
            return _blocked(
                payload, REASON_ENTITLEMENTS_MISSING, admission_hits, digest, version, guardrail=guardrail
            )
        if ceiling.rank < start_action.rank:
            start_action = ceiling

    hits = detect_guardrail_hits(payload.tier, telemetry) + admission_hits
    remaining = budget_remaining_usd(payload, table)
    gate, _ = walk_budget_ladder(
        payload.tier,
        payload.marketplace,
        ProjectedAction(
            kind=start_action,
            current_usage=BudgetUsage(
                full_scrapes_today=telemetry.full_runs,
                proxy_gb_today=telemetry.proxy_gb_estimated,
                signal_checks_today=telemetry.signal_checks,
                cost_usd_today=telemetry.cost_usd_estimated,
            ),
            budget_remaining_usd=remaining,
        ),
        table,
    )

    if gate is BudgetDecision.DENY:
        return _blocked(
            payload,
            hits[0] if hits else REASON_BUDGET_DENIED,
            hits or [REASON_BUDGET_DENIED],
            digest,
            version,
            guardrail=guardrail,
        )

    next_action = start_action
    if gate is BudgetDecision.DOWNGRADE:
        next_action = _affordable_downgrade(payload, start_action, remaining, table)
    mode = EnforcementMode.from_action(next_action)
    degraded = next_action is not requested_action
    increment = build_telemetry_increment(payload.marketplace, next_action, table=table)

    return EnforcementDecision(
        allowed=True,
        mode=mode,
        reason_code=REASON_BUDGET_DOWNGRADE if degraded else REASON_ALLOWED,
        counters_delta=increment,
        audit=DecisionAudit(
            guardrails_hit=hits,
            degrade_path=[payload.requested_mode.value, mode.value] if degraded else [payload.requested_mode.value],
            cost_model_version=version,
            entitlements_version=ENTITLEMENTS_VERSION,
            input_hash=digest,
            guardrail=guardrail,
        ),
    )
