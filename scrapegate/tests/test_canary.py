import pytest

from scrapegate.core.providers import KeyedConfigProvider
from scrapegate.features.canary.service import (
    CanaryConfig,
    CanaryService,
    assign_canary,
    choose_canary,
    load_canary_config,
    normalize_ramp_percent,
)


@pytest.mark.parametrize(
    "raw, expected",
    [(None, 0), ("abc", 0), (float("nan"), 0), (-5, 0), (150, 100), (12.9, 12), ("25", 25)],
)
def test_normalize_ramp_percent(raw, expected):
    assert normalize_ramp_percent(raw) == expected


def test_choose_canary_uses_threshold():
    assert choose_canary(10, random_value=0.05) is True
    assert choose_canary(10, random_value=0.10) is False
    assert choose_canary(100, random_value=0.999) is True


def test_zero_ramp_never_assigns():
    assert assign_canary(0, random_value=0.0).canary is False


def test_gate_closed_skips_before_demo():
    assignment = assign_canary(50, gate_open=False, demo_mode=True, random_value=0.0)
    assert assignment.canary is False
    assert assignment.skipped_reason == "gate_closed"


def test_demo_mode_skips():
    assert assign_canary(50, demo_mode=True, random_value=0.0).skipped_reason == "demo_mode"


def test_service_assign_uses_injected_random():
    provider = KeyedConfigProvider("canary", lambda target: (CanaryConfig(ramp_percent=30), "db"), CanaryConfig())
    service = CanaryService(provider, random_fn=lambda: 0.2)

    assignment = service.assign("ebay")
    assert assignment.canary is True
    assert assignment.ramp_percent == 30


@pytest.mark.usefixtures("sqlite_db")
class TestCanaryPersistence:
    def _service(self, fixed_now):
        return CanaryService(clock=lambda: fixed_now)

    def test_missing_rows_mean_zero_ramp(self):
        assert load_canary_config("ebay") == (CanaryConfig(), "db")

    def test_update_ramp_tracks_previous(self, fixed_now):
        service = self._service(fixed_now)
        service.update_ramp("ebay", 10)
        config = service.update_ramp("ebay", 40)

        assert config == CanaryConfig(ramp_percent=40, previous_percent=10)
        assert service.get_config("ebay") == config

    def test_target_falls_back_to_default_row(self, fixed_now):
        service = self._service(fixed_now)
        service.update_ramp("default", 15)
        assert load_canary_config("vinted")[0].ramp_percent == 15

    def test_rollback_restores_previous(self, fixed_now):
        service = self._service(fixed_now)
        service.update_ramp("ebay", 10)
        service.update_ramp("ebay", 40)

        assert service.rollback("ebay") is True
        assert service.get_config("ebay").ramp_percent == 10

    def test_rollback_without_change_is_a_no_op(self, fixed_now):
        service = self._service(fixed_now)
        assert service.rollback("ebay") is False

    def test_rollback_of_default_backed_target_reports_nothing_done(self, fixed_now):
        service = self._service(fixed_now)
        service.update_ramp("default", 10)
        service.update_ramp("default", 40)

        assert service.rollback("vinted") is False
        assert load_canary_config("default")[0].ramp_percent == 40
