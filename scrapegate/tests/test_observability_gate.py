import math
from unittest.mock import MagicMock

import pytest
from sqlalchemy import insert

from scrapegate.core.database import get_db_session, observability_gates
from scrapegate.core.errors import GateClosedError
from scrapegate.core.metrics import observability_gate_closed_total
from scrapegate.core.providers import static_provider
from scrapegate.features.observability.service import (
    FALLBACK_GATE_CONFIG,
    ObservabilityGateService,
    compute_metrics,
    evaluate_gate,
    load_gate_config,
)
from scrapegate.models.observability import ObservabilityGateConfig, ObservabilityMetrics

CONFIG = ObservabilityGateConfig(
    enabled=True,
    window_minutes=15,
    max_error_rate_percent=20,
    max_median_ms=15000,
    max_p95_ms=30000,
    max_queue_depth=200,
    max_worker_crashes=5,
    max_jobs_per_minute=120,
)


def test_compute_metrics_rates_and_percentiles():
    metrics = compute_metrics(total=10, failed=3, durations_ms=[100, 200, 300, 400, 500])

    assert metrics.error_rate_percent == pytest.approx(30.0)
    assert metrics.success_rate_percent == pytest.approx(70.0)
    assert metrics.median_ms == 300
    assert metrics.p95_ms == pytest.approx(480.0)


def test_compute_metrics_without_jobs():
    metrics = compute_metrics(total=0, failed=0)
    assert metrics.error_rate_percent == 0.0
    assert metrics.success_rate_percent == 100.0
    assert metrics.median_ms == 0.0


def test_healthy_metrics_open_the_gate():
    decision = evaluate_gate(CONFIG, compute_metrics(100, 5, [1000, 2000]), "db")
    assert decision.allowed is True
    assert decision.reasons == []


def test_every_breached_threshold_is_reported():
    metrics = ObservabilityMetrics(error_rate_percent=50, queue_depth=500, worker_crashes=6)
    decision = evaluate_gate(CONFIG, metrics, "cache")

    assert decision.allowed is False
    assert decision.reasons == ["error_rate_high", "queue_depth_high", "worker_crashes_high"]
    assert decision.code == "OBSERVABILITY_GATE_CLOSED"


def test_threshold_is_inclusive():
    assert evaluate_gate(CONFIG, ObservabilityMetrics(queue_depth=200), "db").allowed is True


def test_non_finite_metrics_close_the_gate():
    decision = evaluate_gate(CONFIG, ObservabilityMetrics(p95_ms=math.nan), "db")
    assert decision.reasons == ["metrics_invalid"]


def test_fallback_source_closes_with_config_unavailable():
    decision = evaluate_gate(CONFIG, ObservabilityMetrics(), "fallback")
    assert decision.allowed is False
    assert decision.code == "OBSERVABILITY_CONFIG_UNAVAILABLE"


def test_disabled_gate_is_open():
    disabled = CONFIG.model_copy(update={"enabled": False})
    assert evaluate_gate(disabled, ObservabilityMetrics(error_rate_percent=100), "db").allowed is True


class TestGateService:
    def test_loader_receives_window(self):
        loader = MagicMock(return_value=ObservabilityMetrics())
        service = ObservabilityGateService(loader, static_provider("gate", CONFIG))

        assert service.assert_gate_open().allowed is True
        loader.assert_called_once_with(15)

    def test_closed_gate_raises_and_counts_reasons(self):
        loader = MagicMock(return_value=ObservabilityMetrics(jobs_per_minute=500))
        service = ObservabilityGateService(loader, static_provider("gate", CONFIG))

        with pytest.raises(GateClosedError) as exc_info:
            service.assert_gate_open()

        assert exc_info.value.details["reasons"] == ["jobs_per_minute_high"]
        assert observability_gate_closed_total.value({"reason": "jobs_per_minute_high"}) == 1

    def test_metrics_failure_fails_closed(self):
        loader = MagicMock(side_effect=RuntimeError("queue unreachable"))
        service = ObservabilityGateService(loader, static_provider("gate", CONFIG))

        decision = service.decision()
        assert decision.allowed is False
        assert decision.code == "OBSERVABILITY_CONFIG_UNAVAILABLE"

    def test_fallback_config_skips_metrics(self):
        loader = MagicMock()
        service = ObservabilityGateService(loader, static_provider("gate", FALLBACK_GATE_CONFIG, source="fallback"))

        with pytest.raises(GateClosedError) as exc_info:
            service.assert_gate_open()
        assert exc_info.value.code == "OBSERVABILITY_CONFIG_UNAVAILABLE"
        loader.assert_not_called()


@pytest.mark.usefixtures("sqlite_db")
class TestGateLoader:
    def test_missing_row_is_fallback(self):
        config, source = load_gate_config()
        assert source == "fallback"
        assert config == FALLBACK_GATE_CONFIG

    def test_row_is_loaded(self):
        with get_db_session() as session:
            session.execute(insert(observability_gates).values(id="default", max_queue_depth=50))

        config, source = load_gate_config()
        assert source == "db"
        assert config.max_queue_depth == 50
        assert config.window_minutes == 15
