"""Tests for config validation, structured logging, errors and metrics export."""

import json
import logging
from types import SimpleNamespace

import pytest

from scrapegate.core.config import validate_config
from scrapegate.core.errors import AppError, EnforcementBlockedError, UnknownTierError
from scrapegate.core.logging import (
    CorrelationIdFilter,
    JsonFormatter,
    PrettyFormatter,
    correlation_scope,
    get_correlation_id,
    log_event,
)
from scrapegate.core.metrics import METRICS, Counter, Gauge


def make_settings(**overrides):
    defaults = dict(
        CONFIG_STRICT=False,
        TELEMETRY_STORE="memory",
        DATABASE_URL=None,
        REDIS_URL="redis://localhost:6379",
        ENFORCEMENT_AUDIT_ENABLED=False,
        ENFORCEMENT_AUDIT_MODE="advisory",
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


class TestValidateConfig:
    def test_memory_store_without_audit_needs_nothing(self):
        assert validate_config(settings_obj=make_settings(), strict=True) is True

    def test_sql_store_requires_database_url(self):
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            validate_config(settings_obj=make_settings(TELEMETRY_STORE="sql"), strict=True)

    def test_audit_requires_database_url(self):
        with pytest.raises(RuntimeError):
            validate_config(settings_obj=make_settings(ENFORCEMENT_AUDIT_ENABLED=True), strict=True)

    def test_redis_store_requires_redis_url(self):
        with pytest.raises(RuntimeError, match="REDIS_URL"):
            validate_config(settings_obj=make_settings(TELEMETRY_STORE="redis", REDIS_URL=""), strict=True)

    def test_unknown_store_rejected_in_strict_mode(self):
        with pytest.raises(RuntimeError):
            validate_config(settings_obj=make_settings(TELEMETRY_STORE="mongo"), strict=True)

    def test_non_strict_only_warns(self, caplog):
        cfg = make_settings(TELEMETRY_STORE="sql", ENFORCEMENT_AUDIT_MODE="loud")
        logger = logging.getLogger("scrapegate.test")
        with caplog.at_level(logging.WARNING, logger="scrapegate.test"):
            assert validate_config(settings_obj=cfg, strict=False, logger=logger) is True
        assert "Missing required configuration: DATABASE_URL" in caplog.text
        assert "Unsupported ENFORCEMENT_AUDIT_MODE" in caplog.text


def _record(msg="hello", **extra):
    record = logging.LogRecord("scrapegate.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:
    def test_correlation_scope_binds_and_resets(self):
        assert get_correlation_id() is None
        with correlation_scope("cid-9") as cid:
            assert cid == "cid-9"
            assert get_correlation_id() == "cid-9"
        assert get_correlation_id() is None

    def test_correlation_scope_generates_id(self):
        with correlation_scope() as cid:
            assert cid
            assert get_correlation_id() == cid

    def test_filter_injects_correlation_id(self):
        record = _record()
        with correlation_scope("cid-1"):
            CorrelationIdFilter().filter(record)
        assert record.correlation_id == "cid-1"

    def test_json_formatter_includes_extras(self):
        record = _record(correlation_id="cid-2", marketplace="ebay", reason_code="allowed")
        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "hello"
        assert payload["correlation_id"] == "cid-2"
        assert payload["marketplace"] == "ebay"
        assert payload["reason_code"] == "allowed"
        assert payload["timestamp"].endswith("Z")

    def test_pretty_formatter(self):
        line = PrettyFormatter().format(_record(correlation_id="cid-3"))
        assert "[scrapegate] [cid=cid-3] hello" in line

    def test_log_event_truncates_extras(self, caplog):
        with caplog.at_level(logging.INFO, logger="scrapegate"):
            log_event("info", "[dispatch] test", user_id="u1", extra={"html": "x" * 600})
        record = caplog.records[-1]
        assert record.user_id == "u1"
        assert record.html.endswith("...<truncated>")


class TestErrors:
    def test_payload_shape(self):
        error = AppError("nope", code="DEMO_SOURCE_BLOCKED", status_code=403, details={"marketplace": "ebay"})
        assert error.to_payload() == {
            "error": {"code": "DEMO_SOURCE_BLOCKED", "message": "nope", "details": {"marketplace": "ebay"}}
        }
        assert error.status_code == 403

    def test_enforcement_blocked_carries_reason(self, fixed_now):
        error = EnforcementBlockedError("blocked", reason_code="cooldown_active", next_allowed_at=fixed_now)
        assert error.code == "cooldown_active"
        assert error.status_code == 429
        assert error.details["next_allowed_at"] == fixed_now.isoformat()

    def test_unknown_tier_is_a_value_error(self):
        assert issubclass(UnknownTierError, ValueError)


class TestMetrics:
    def test_counter_rejects_negative(self):
        with pytest.raises(ValueError):
            Counter("c", ["a"]).inc({"a": "x"}, -1)

    def test_gauge_moves_both_ways(self):
        gauge = Gauge("g")
        gauge.set(5)
        gauge.inc(amount=2)
        gauge.dec(amount=4)
        assert gauge.value() == 3

    def test_prometheus_export(self):
        counter = METRICS.counter("scrapegate_test_total", ["marketplace"])
        counter.inc({"marketplace": 'e"bay'})
        text = METRICS.export_prometheus()

        assert "# TYPE scrapegate_test_total counter" in text
        assert 'scrapegate_test_total{marketplace="e\\"bay"} 1.0' in text
