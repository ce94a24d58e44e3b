"""
scrapegate/features/dispatch/service.py

Single entrypoint for enforcement decisions at job dispatch.

Order per job:
1. Delta pre-filter (nothing new -> skip, no counters)
2. Kill switch
3. Observability gate (a trip rolls the canary ramp back)
4. Demo mode and marketplace rate shaping
5. Runtime enforcement with the admission context
6. Canary assignment and marketplace tuning
7. Counter increment and audit row
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union
from uuid import uuid4

from scrapegate.core.config import settings
from scrapegate.core.errors import AppError, EnforcementBlockedError, GateClosedError
from scrapegate.core.logging import correlation_scope, log_event
from scrapegate.core.metrics import telemetry_cost_usd
from scrapegate.features.antibot.service import PageClassification, classify_page_state, cooldown_for_page_state
from scrapegate.features.canary.service import CanaryAssignment, CanaryService
from scrapegate.features.delta.service import evaluate_delta
from scrapegate.features.economics.model import CostModelTable, cost_model_provider
from scrapegate.features.enforcement.audit import AuditSink, record_enforcement_event, record_gate_event_if_needed
from scrapegate.features.enforcement.contracts import AdmissionContext, EnforcementInput
from scrapegate.features.enforcement.service import evaluate_enforcement
from scrapegate.features.entitlements.service import ENTITLEMENTS_VERSION, resolve_entitlements, validate_entitlements
from scrapegate.features.guardrails.service import build_usage_snapshot, to_gate_decision
from scrapegate.features.kill_switch.service import KillSwitchService, resolve_worker_class
from scrapegate.features.marketplace_rate.service import MarketplaceRateService, demo_overrides_from_settings
from scrapegate.features.observability.service import ObservabilityGateService
from scrapegate.features.telemetry.service import day_key
from scrapegate.features.telemetry.store import TelemetryStore
from scrapegate.features.tuning.service import build_telemetry_snapshot, resolve_tuning
from scrapegate.models.decision import DecisionAudit, EnforcementDecision
from scrapegate.models.delta import DeltaEvaluation
from scrapegate.models.guardrails import MaxConcurrencyExceeded
from scrapegate.models.tier import EnforcementMode, Marketplace, TierKey, parse_marketplace, parse_tier
from scrapegate.models.tuning import ResolvedTuning
from scrapegate.models.validation import Valid

logger = logging.getLogger(__name__)


@dataclass
class DispatchRequest:
    user_id: str
    tier: Union[str, TierKey]
    marketplace: Union[str, Marketplace]
    job_type: str = "search"
    monitor_id: Optional[str] = None
    requested_mode: EnforcementMode = EnforcementMode.FULL
    running_jobs: int = 0
    last_run_at: Optional[datetime] = None
    # None resolves the tier's snapshot
    entitlements: Optional[Any] = None
    meta: Optional[Dict[str, Any]] = None
    country: Optional[str] = None
    job_id: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class DispatchOutcome:
    status: str  # dispatched | skipped
    job_id: str
    correlation_id: str
    delta: DeltaEvaluation
    decision: Optional[EnforcementDecision] = None
    tuning: Optional[ResolvedTuning] = None
    canary: Optional[CanaryAssignment] = None
    demo: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _allowed_demo_sources() -> set:
    return {value.strip() for value in settings.DEMO_ALLOWED_SOURCES.split(",") if value.strip()}


class Dispatcher:
    def __init__(
        self,
        store: TelemetryStore,
        audit_sink: AuditSink,
        kill_switch: KillSwitchService,
        gate: ObservabilityGateService,
        *,
        marketplace_rate: Optional[MarketplaceRateService] = None,
        canary: Optional[CanaryService] = None,
        clock: Callable[[], datetime] = _utcnow,
        cost_table: Optional[CostModelTable] = None,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.kill_switch = kill_switch
        self.gate = gate
        self.marketplace_rate = marketplace_rate
        self.canary = canary
        self.clock = clock
        self.cost_table = cost_table

    def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        with correlation_scope(request.correlation_id) as correlation_id:
            return self._dispatch(request, correlation_id)

    def _dispatch(self, request: DispatchRequest, correlation_id: str) -> DispatchOutcome:
        now = self.clock()
        market = parse_marketplace(request.marketplace)
        tier = parse_tier(request.tier)
        job_id = request.job_id or uuid4().hex

        delta = evaluate_delta(request.meta, market.value)
        if delta.short_circuit:
            return DispatchOutcome(status="skipped", job_id=job_id, correlation_id=correlation_id, delta=delta)

        worker_class = resolve_worker_class(request.job_type, request.monitor_id)
        self.kill_switch.assert_scraping_enabled(market, worker_class)

        try:
            self.gate.assert_gate_open()
        except GateClosedError:
            if self.canary is not None:
                self.canary.rollback(market.value)
            raise

        demo = self.kill_switch.demo_mode(now)
        if demo.active and market.value not in _allowed_demo_sources():
            raise AppError(
                "Marketplace blocked in demo mode",
                code="DEMO_SOURCE_BLOCKED",
                status_code=403,
                details={"marketplace": market.value},
            )
        if self.marketplace_rate is not None:
            overrides = demo_overrides_from_settings() if demo.active else None
            self.marketplace_rate.assert_within_limits(market, now, overrides)

        today = day_key(now)
        telemetry = self.store.get_recent(request.user_id, market, today)
        entitlements = request.entitlements if request.entitlements is not None else resolve_entitlements(tier)
        checked = validate_entitlements(entitlements)
        snapshot = checked.value if isinstance(checked, Valid) else None
        if snapshot is not None and snapshot.tier_key != tier:
            raise AppError(
                "Entitlements tier does not match request tier",
                code="ENTITLEMENTS_TIER_MISMATCH",
                status_code=409,
                details={"tier": tier.value, "entitlements_tier": snapshot.tier_key.value},
            )

        decision = evaluate_enforcement(
            EnforcementInput(
                user_id=request.user_id,
                tier=tier,
                marketplace=market,
                requested_mode=request.requested_mode,
                now=now,
                recent_telemetry=telemetry,
                admission=AdmissionContext(
                    entitlements=snapshot,
                    running_jobs=request.running_jobs,
                    last_run_at=request.last_run_at,
                ),
            ),
            self.cost_table,
        )

        guardrail = decision.audit.guardrail
        if guardrail is not None:
            usage = build_usage_snapshot(telemetry, request.running_jobs, request.last_run_at, market.value)
            record_gate_event_if_needed(
                self.audit_sink,
                user_id=request.user_id,
                marketplace=market,
                tier=tier,
                job_id=None,
                gate=to_gate_decision(guardrail, entitlements, usage),
            )

        if not decision.allowed:
            record_enforcement_event(self.audit_sink, request.user_id, market, tier, None, decision)
            raise EnforcementBlockedError(
                "Enforcement blocked request",
                reason_code=decision.reason_code,
                next_allowed_at=decision.next_allowed_at,
            )

        if isinstance(guardrail, MaxConcurrencyExceeded):
            raise EnforcementBlockedError(
                "Concurrency limit reached for tier",
                reason_code=guardrail.reason_code,
                details={"tier": tier.value, "limit": guardrail.limit},
            )

        if demo.active:
            canary = CanaryAssignment(canary=False, ramp_percent=0, skipped_reason="demo_mode")
        elif self.canary is not None:
            canary = self.canary.assign(market.value)
        else:
            canary = None
        if canary is not None:
            logger.info("[dispatch] canary assignment", extra={"job_id": job_id, "marketplace": market.value, "canary": canary.canary})

        tuning = resolve_tuning(
            market,
            tier,
            country=request.country,
            telemetry_snapshot=build_telemetry_snapshot(snapshot, telemetry),
        )
        if not tuning.enabled:
            self._record_tuning_block(request.user_id, market, tier, job_id, tuning)
            raise EnforcementBlockedError(
                "Marketplace disabled by tuning",
                reason_code="MARKETPLACE_DISABLED",
                details={"reason": tuning.reason},
            )

        if decision.counters_delta is not None:
            self.store.increment(request.user_id, market, today, decision.counters_delta)
            telemetry_cost_usd.inc({"marketplace": market.value}, decision.counters_delta.cost_usd_estimated)

        record_enforcement_event(self.audit_sink, request.user_id, market, tier, job_id, decision)

        log_event(
            "info",
            "[dispatch] job dispatched",
            user_id=request.user_id,
            marketplace=market.value,
            event_type="dispatch",
            reason_code=decision.reason_code,
            extra={"job_id": job_id, "mode": decision.mode.value},
        )
        return DispatchOutcome(
            status="dispatched",
            job_id=job_id,
            correlation_id=correlation_id,
            delta=delta,
            decision=decision,
            tuning=tuning,
            canary=canary,
            demo=demo.active,
            meta={
                "enforcement_mode": decision.mode.value,
                "enforcement_decision": decision.outcome,
                "enforcement_reason": decision.reason_code,
                "enforcement_audit": decision.audit.model_dump(mode="json"),
            },
        )

    def _record_tuning_block(self, user_id: str, market: Marketplace, tier: TierKey, job_id: str, tuning: ResolvedTuning) -> None:
        blocked = EnforcementDecision(
            allowed=False,
            mode=EnforcementMode.BLOCK,
            reason_code=tuning.reason or "marketplace_disabled",
            audit=DecisionAudit(
                guardrails_hit=["marketplace_tuning"],
                degrade_path=[EnforcementMode.BLOCK.value],
                cost_model_version=(self.cost_table or cost_model_provider.get()).version,
                entitlements_version=ENTITLEMENTS_VERSION,
                input_hash="",
            ),
        )
        record_enforcement_event(self.audit_sink, user_id, market, tier, job_id, blocked)

    def record_page_result(
        self,
        user_id: str,
        marketplace: Union[str, Marketplace],
        html: Optional[str],
        attempt: int = 1,
    ) -> PageClassification:
        """Classify a fetched page; anti-bot states put the user's marketplace row on cooldown."""
        now = self.clock()
        classification = classify_page_state(html)
        until = cooldown_for_page_state(classification, now, attempt)
        if until is not None:
            self.store.set_cooldown(user_id, marketplace, day_key(now), until)
            log_event(
                "warning",
                "[dispatch] anti-bot cooldown",
                user_id=user_id,
                marketplace=str(getattr(marketplace, "value", marketplace)),
                event_type="antibot_cooldown",
                extra={"state": classification.state.value, "cooldown_until": until.isoformat()},
            )
        return classification
