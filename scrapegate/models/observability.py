"""
scrapegate/models/observability.py

Observability gate thresholds, the windowed job metrics they are checked
against and the resulting gate decision.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ObservabilityGateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    window_minutes: int
    max_error_rate_percent: float
    max_median_ms: float
    max_p95_ms: float
    max_queue_depth: float
    max_worker_crashes: float
    max_jobs_per_minute: float


class ObservabilityMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: float = 0
    failed: float = 0
    error_rate_percent: float = 0.0
    success_rate_percent: float = 100.0
    median_ms: float = 0.0
    p95_ms: float = 0.0
    queue_depth: float = 0
    worker_crashes: float = 0
    jobs_per_minute: float = 0


class GateDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    code: str
    metrics: ObservabilityMetrics
