"""
Dispatcher end to end with in-memory counters and audit, static configs.
"""
import logging
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from scrapegate.core.errors import (
    AppError,
    EnforcementBlockedError,
    GateClosedError,
    MarketplaceRateLimitedError,
    ScrapingDisabledError,
)
from scrapegate.core.metrics import telemetry_cost_usd
from scrapegate.core.providers import KeyedConfigProvider, static_provider
from scrapegate.features.dispatch.service import Dispatcher, DispatchRequest
from scrapegate.features.economics.service import action_cost_usd
from scrapegate.features.entitlements.service import resolve_entitlements
from scrapegate.features.kill_switch.service import KillSwitchService
from scrapegate.features.marketplace_rate.service import SAFE_RATE_CONFIG, MarketplaceRateService
from scrapegate.features.observability.service import ObservabilityGateService
from scrapegate.features.telemetry.service import build_telemetry_increment
from scrapegate.features.tuning.service import MARKETPLACE_TUNING
from scrapegate.models.kill_switch import KillSwitchConfig
from scrapegate.models.marketplace_rate import MarketplaceRateConfig, MarketplaceRateMetrics
from scrapegate.models.observability import ObservabilityGateConfig, ObservabilityMetrics
from scrapegate.models.tier import ActionKind, EnforcementMode
from scrapegate.models.tuning import KillSwitchFlags

TODAY = "2026-03-10"

KILL_SWITCHES = KillSwitchConfig(
    scrapers_enabled=True,
    ebay_enabled=True,
    facebook_enabled=True,
    vinted_enabled=True,
    gumtree_enabled=True,
    amazon_enabled=True,
    craigslist_enabled=True,
    realtime_enabled=True,
    scheduled_enabled=True,
    manual_enabled=True,
)

GATE = ObservabilityGateConfig(
    enabled=True,
    window_minutes=15,
    max_error_rate_percent=20,
    max_median_ms=15000,
    max_p95_ms=30000,
    max_queue_depth=200,
    max_worker_crashes=5,
    max_jobs_per_minute=120,
)


@pytest.fixture
def build_dispatcher(memory_store, memory_sink, fixed_now):
    def _build(kill_switches=KILL_SWITCHES, gate_metrics=None, **kwargs):
        metrics = gate_metrics or ObservabilityMetrics()
        return Dispatcher(
            memory_store,
            memory_sink,
            KillSwitchService(static_provider("kill_switch", kill_switches)),
            ObservabilityGateService(lambda window: metrics, static_provider("gate", GATE)),
            clock=lambda: fixed_now,
            **kwargs,
        )

    return _build


def test_dispatch_allows_and_records(build_dispatcher, memory_store, memory_sink):
    outcome = build_dispatcher().dispatch(
        DispatchRequest(user_id="u1", tier="free", marketplace="ebay", job_id="job-1", correlation_id="cid-1")
    )

    assert outcome.status == "dispatched"
    assert outcome.correlation_id == "cid-1"
    assert outcome.decision.mode == EnforcementMode.FULL
    assert outcome.tuning.enabled is True
    assert outcome.meta["enforcement_decision"] == "ALLOW"
    assert memory_store.get_recent("u1", "ebay", TODAY).full_runs == 1
    assert telemetry_cost_usd.value({"marketplace": "ebay"}) == pytest.approx(
        action_cost_usd("ebay", ActionKind.FULL_SCRAPE)
    )
    [event] = memory_sink.events
    assert event["job_id"] == "job-1"
    assert event["decision"] == "ALLOW"


def test_dispatch_logs_structured_event(build_dispatcher, caplog):
    with caplog.at_level(logging.INFO, logger="scrapegate"):
        build_dispatcher().dispatch(
            DispatchRequest(user_id="u1", tier="free", marketplace="ebay", job_id="job-2", correlation_id="cid-2")
        )

    [record] = [r for r in caplog.records if r.getMessage() == "[dispatch] job dispatched"]
    assert record.event_type == "dispatch"
    assert record.correlation_id == "cid-2"
    assert record.job_id == "job-2"
    assert record.reason_code == "allowed"


def test_nothing_new_skips_without_counters(build_dispatcher, memory_store, memory_sink):
    meta = {"current_listing_hashes": ["a"], "last_seen_listing_hashes": ["a"]}
    outcome = build_dispatcher().dispatch(DispatchRequest(user_id="u1", tier="free", marketplace="ebay", meta=meta))

    assert outcome.status == "skipped"
    assert outcome.decision is None
    assert memory_store.get_recent("u1", "ebay", TODAY).full_runs == 0
    assert memory_sink.events == []


def test_kill_switch_stops_dispatch(build_dispatcher, memory_store):
    dispatcher = build_dispatcher(kill_switches=KILL_SWITCHES.model_copy(update={"ebay_enabled": False}))

    with pytest.raises(ScrapingDisabledError):
        dispatcher.dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="ebay"))
    assert memory_store.get_recent("u1", "ebay", TODAY).full_runs == 0


def test_gate_trip_rolls_back_canary(build_dispatcher):
    canary = MagicMock()
    dispatcher = build_dispatcher(gate_metrics=ObservabilityMetrics(worker_crashes=10), canary=canary)

    with pytest.raises(GateClosedError):
        dispatcher.dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="vinted"))
    canary.rollback.assert_called_once_with("vinted")
    canary.assign.assert_not_called()


def test_marketplace_rate_limit_stops_dispatch(build_dispatcher):
    config = MarketplaceRateConfig(enabled=True, max_concurrency=2, jobs_per_minute=30, error_threshold=20, cooldown_seconds=60)
    rate = MarketplaceRateService(
        lambda market: MarketplaceRateMetrics(running=2),
        KeyedConfigProvider("marketplace_rate", lambda market: (config, "db"), SAFE_RATE_CONFIG, ttl_seconds=0),
    )

    with pytest.raises(MarketplaceRateLimitedError):
        build_dispatcher(marketplace_rate=rate).dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="ebay"))


class TestDemoMode:
    def _demo(self):
        return KILL_SWITCHES.model_copy(update={"demo_mode_enabled": True})

    def test_blocks_sources_outside_allow_list(self, build_dispatcher):
        with pytest.raises(AppError) as exc_info:
            build_dispatcher(kill_switches=self._demo()).dispatch(
                DispatchRequest(user_id="u1", tier="pro", marketplace="ebay")
            )
        assert exc_info.value.code == "DEMO_SOURCE_BLOCKED"
        assert exc_info.value.status_code == 403

    def test_allowed_source_skips_canary(self, build_dispatcher):
        canary = MagicMock()
        outcome = build_dispatcher(kill_switches=self._demo(), canary=canary).dispatch(
            DispatchRequest(user_id="u1", tier="pro", marketplace="facebook")
        )

        assert outcome.demo is True
        assert outcome.canary.skipped_reason == "demo_mode"
        canary.assign.assert_not_called()


class TestEnforcement:
    def test_cooldown_blocks_and_is_audited(self, build_dispatcher, memory_store, memory_sink, fixed_now):
        memory_store.set_cooldown("u1", "ebay", TODAY, fixed_now + timedelta(minutes=5))

        with pytest.raises(EnforcementBlockedError) as exc_info:
            build_dispatcher().dispatch(DispatchRequest(user_id="u1", tier="free", marketplace="ebay"))

        assert exc_info.value.reason_code == "cooldown_active"
        assert exc_info.value.next_allowed_at == fixed_now + timedelta(minutes=5)
        assert [e["decision"] for e in memory_sink.events] == ["DENY"]

    def test_exhausted_daily_runs_downgrade_and_record_gate(self, build_dispatcher, memory_store, memory_sink):
        memory_store.increment("u1", "ebay", TODAY, build_telemetry_increment("ebay", ActionKind.FULL_SCRAPE, 8))

        outcome = build_dispatcher().dispatch(DispatchRequest(user_id="u1", tier="free", marketplace="ebay"))

        assert outcome.decision.mode == EnforcementMode.PARTIAL
        assert outcome.tuning.backoff_level == "0.9"
        assert [e["decision"] for e in memory_sink.events] == ["BLOCKED", "DOWNGRADE"]
        assert memory_sink.events[0]["reason_code"] == "MAX_DAILY_RUNS_EXCEEDED"
        assert memory_store.get_recent("u1", "ebay", TODAY).partial_runs == 1

    def test_concurrency_limit_blocks_after_recording_throttle(self, build_dispatcher, memory_store, memory_sink):
        with pytest.raises(EnforcementBlockedError) as exc_info:
            build_dispatcher().dispatch(DispatchRequest(user_id="u1", tier="free", marketplace="ebay", running_jobs=1))

        assert exc_info.value.reason_code == "MAX_CONCURRENCY_EXCEEDED"
        assert [e["decision"] for e in memory_sink.events] == ["THROTTLED"]
        assert memory_store.get_recent("u1", "ebay", TODAY).full_runs == 0

    def test_refresh_floor_blocks(self, build_dispatcher, fixed_now):
        last_run = fixed_now - timedelta(hours=2)
        with pytest.raises(EnforcementBlockedError) as exc_info:
            build_dispatcher().dispatch(
                DispatchRequest(user_id="u1", tier="pro", marketplace="ebay", last_run_at=last_run)
            )
        assert exc_info.value.reason_code == "refresh_interval_floor"
        assert exc_info.value.next_allowed_at == last_run + timedelta(hours=6)

    def test_malformed_entitlements_fail_closed(self, build_dispatcher):
        with pytest.raises(EnforcementBlockedError) as exc_info:
            build_dispatcher().dispatch(
                DispatchRequest(user_id="u1", tier="pro", marketplace="ebay", entitlements={"tier_key": "pro"})
            )
        assert exc_info.value.reason_code == "entitlements_missing"

    def test_entitlements_for_another_tier_are_rejected(self, build_dispatcher, memory_store, memory_sink):
        with pytest.raises(AppError) as exc_info:
            build_dispatcher().dispatch(
                DispatchRequest(user_id="u1", tier="pro", marketplace="ebay", entitlements=resolve_entitlements("free"))
            )

        assert exc_info.value.code == "ENTITLEMENTS_TIER_MISMATCH"
        assert exc_info.value.status_code == 409
        assert memory_sink.events == []
        assert memory_store.get_recent("u1", "ebay", TODAY).full_runs == 0

    def test_tuning_kill_switch_blocks(self, build_dispatcher, memory_store, memory_sink, monkeypatch):
        killed = MARKETPLACE_TUNING["gumtree"].model_copy(update={"kill_switch": KillSwitchFlags(global_=True)})
        monkeypatch.setitem(MARKETPLACE_TUNING, "gumtree", killed)

        with pytest.raises(EnforcementBlockedError) as exc_info:
            build_dispatcher().dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="gumtree", job_id="j-7"))

        assert exc_info.value.reason_code == "MARKETPLACE_DISABLED"
        [event] = memory_sink.events
        assert event["mode"] == "BLOCK"
        assert event["audit"]["guardrails_hit"] == ["marketplace_tuning"]
        assert memory_store.get_recent("u1", "gumtree", TODAY).full_runs == 0


class TestPageResults:
    def test_block_page_sets_cooldown_that_blocks_next_dispatch(self, build_dispatcher, memory_store, fixed_now):
        dispatcher = build_dispatcher()

        classification = dispatcher.record_page_result("u1", "vinted", "<h1>Access denied</h1>")

        assert classification.reason == "blocked_html"
        assert memory_store.get_recent("u1", "vinted", TODAY).cooldown_until == fixed_now + timedelta(minutes=30)
        with pytest.raises(EnforcementBlockedError):
            dispatcher.dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="vinted"))

    def test_listing_page_sets_no_cooldown(self, build_dispatcher, memory_store):
        build_dispatcher().record_page_result("u1", "vinted", '<li data-item-id="42">lamp</li>')
        assert memory_store.get_recent("u1", "vinted", TODAY).cooldown_until is None

    def test_listing_page_with_login_link_keeps_dispatch_open(self, build_dispatcher, memory_store):
        dispatcher = build_dispatcher()
        html = '<nav><a href="/login">Login</a></nav><div data-testid="listing-card">iPhone</div>'

        classification = dispatcher.record_page_result("u1", "vinted", html)

        assert classification.state.value == "OK"
        assert memory_store.get_recent("u1", "vinted", TODAY).cooldown_until is None
        outcome = dispatcher.dispatch(DispatchRequest(user_id="u1", tier="pro", marketplace="vinted"))
        assert outcome.status == "dispatched"
