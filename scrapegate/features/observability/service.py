"""
scrapegate/features/observability/service.py

Observability gate: stop dispatching when the worker fleet looks unhealthy.

The gate is open only when every windowed metric is finite and within its
threshold. An unavailable config closes it with
OBSERVABILITY_CONFIG_UNAVAILABLE. A disabled gate is open.
"""

import logging
import math
import statistics
from typing import Callable, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import select

from scrapegate.core.database import get_db_session, observability_gates
from scrapegate.core.errors import GateClosedError
from scrapegate.core.metrics import observability_gate_closed_total
from scrapegate.core.providers import ConfigProvider, ConfigSource
from scrapegate.models.observability import GateDecision, ObservabilityGateConfig, ObservabilityMetrics

logger = logging.getLogger(__name__)

GATE_ROW_ID = "default"


class ObservabilityGateCode:
    CONFIG_UNAVAILABLE = "OBSERVABILITY_CONFIG_UNAVAILABLE"
    GATE_CLOSED = "OBSERVABILITY_GATE_CLOSED"


# Enabled with zero thresholds: any traffic at all closes it
FALLBACK_GATE_CONFIG = ObservabilityGateConfig(
    enabled=True,
    window_minutes=15,
    max_error_rate_percent=0,
    max_median_ms=0,
    max_p95_ms=0,
    max_queue_depth=0,
    max_worker_crashes=0,
    max_jobs_per_minute=0,
)

_THRESHOLDS = (
    ("error_rate_percent", "max_error_rate_percent", "error_rate_high"),
    ("median_ms", "max_median_ms", "median_latency_high"),
    ("p95_ms", "max_p95_ms", "p95_latency_high"),
    ("queue_depth", "max_queue_depth", "queue_depth_high"),
    ("worker_crashes", "max_worker_crashes", "worker_crashes_high"),
    ("jobs_per_minute", "max_jobs_per_minute", "jobs_per_minute_high"),
)

MetricsLoader = Callable[[int], ObservabilityMetrics]


def zero_metrics() -> ObservabilityMetrics:
    return ObservabilityMetrics()


def _percentile(values: Sequence[float], fraction: float) -> float:
    # Linear interpolation between closest ranks
    ordered = sorted(values)
    if not ordered:
        return 0.0
    position = (len(ordered) - 1) * fraction
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


def compute_metrics(
    total: int,
    failed: int,
    durations_ms: Sequence[float] = (),
    queue_depth: int = 0,
    worker_crashes: int = 0,
    jobs_per_minute: int = 0,
) -> ObservabilityMetrics:
    """Build the windowed metrics from raw job counts and durations."""
    error_rate = (failed / total) * 100 if total > 0 else 0.0
    return ObservabilityMetrics(
        total=total,
        failed=failed,
        error_rate_percent=error_rate,
        success_rate_percent=100 - error_rate if total > 0 else 100.0,
        median_ms=float(statistics.median(durations_ms)) if durations_ms else 0.0,
        p95_ms=_percentile(durations_ms, 0.95),
        queue_depth=queue_depth,
        worker_crashes=worker_crashes,
        jobs_per_minute=jobs_per_minute,
    )


def evaluate_gate(config: ObservabilityGateConfig, metrics: ObservabilityMetrics, source: ConfigSource) -> GateDecision:
    if source == "fallback":
        return GateDecision(
            allowed=False,
            reasons=["config_unavailable"],
            code=ObservabilityGateCode.CONFIG_UNAVAILABLE,
            metrics=metrics,
        )

    if not config.enabled:
        return GateDecision(allowed=True, reasons=[], code=ObservabilityGateCode.GATE_CLOSED, metrics=metrics)

    values = metrics.model_dump()
    if any(not math.isfinite(value) for value in values.values()):
        return GateDecision(
            allowed=False,
            reasons=["metrics_invalid"],
            code=ObservabilityGateCode.GATE_CLOSED,
            metrics=metrics,
        )

    reasons = [
        reason
        for metric_field, limit_field, reason in _THRESHOLDS
        if values[metric_field] > getattr(config, limit_field)
    ]
    return GateDecision(
        allowed=not reasons,
        reasons=reasons,
        code=ObservabilityGateCode.GATE_CLOSED,
        metrics=metrics,
    )


def load_gate_config() -> Tuple[ObservabilityGateConfig, ConfigSource]:
    with get_db_session() as session:
        row = session.execute(
            select(observability_gates).where(observability_gates.c.id == GATE_ROW_ID)
        ).mappings().first()

    if row is None:
        logger.warning("[observability] gate config missing, failing closed")
        return FALLBACK_GATE_CONFIG, "fallback"

    data = {key: value for key, value in row.items() if key in ObservabilityGateConfig.model_fields}
    try:
        config = ObservabilityGateConfig.model_validate(data)
    except ValidationError:
        logger.warning("[observability] gate config malformed, failing closed", exc_info=True)
        return FALLBACK_GATE_CONFIG, "fallback"
    thresholds = config.model_dump(exclude={"enabled"})
    if any(not math.isfinite(value) for value in thresholds.values()):
        logger.warning("[observability] gate config has non-finite thresholds, failing closed")
        return FALLBACK_GATE_CONFIG, "fallback"
    return config, "db"


def build_gate_provider(**kwargs) -> ConfigProvider[ObservabilityGateConfig]:
    return ConfigProvider("observability_gate", load_gate_config, FALLBACK_GATE_CONFIG, **kwargs)


class ObservabilityGateService:
    """
    Gate decisions from a config provider and a windowed metrics loader.

    ``metrics_loader(window_minutes)`` reads the job queue; the queue itself
    lives outside this package.
    """

    def __init__(
        self,
        metrics_loader: MetricsLoader,
        provider: Optional[ConfigProvider[ObservabilityGateConfig]] = None,
    ):
        self.metrics_loader = metrics_loader
        self.provider = provider or build_gate_provider()

    def decision(self) -> GateDecision:
        config, source = self.provider.get()
        if source == "fallback":
            return evaluate_gate(config, zero_metrics(), source)
        try:
            metrics = self.metrics_loader(config.window_minutes)
        except Exception:
            logger.error("[observability] metrics fetch failed, failing closed", exc_info=True)
            return evaluate_gate(config, zero_metrics(), "fallback")
        return evaluate_gate(config, metrics, source)

    def assert_gate_open(self) -> GateDecision:
        decision = self.decision()
        if decision.allowed:
            return decision
        for reason in decision.reasons:
            observability_gate_closed_total.inc({"reason": reason})
        logger.warning(
            "[observability] gate closed",
            extra={"reasons": decision.reasons, "metrics": decision.metrics.model_dump()},
        )
        raise GateClosedError(
            "Observability gate closed",
            code=decision.code,
            details={"reasons": decision.reasons, "metrics": decision.metrics.model_dump()},
        )
