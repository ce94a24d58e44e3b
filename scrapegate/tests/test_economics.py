import json

import pytest

from scrapegate.core.errors import UnknownMarketplaceError
from scrapegate.features.economics.model import DEFAULT_COST_MODEL, CostModelProvider
from scrapegate.features.economics.service import (
    action_cost_usd,
    action_proxy_gb,
    estimate_daily_cost_usd,
    expected_cost_per_refresh,
    expected_full_scrape_probability,
    expected_partial_fetch_probability,
    expected_proxy_gb_per_refresh,
    forecast_daily_cost,
    refreshes_per_day,
    tier_daily_cost_ceiling_usd,
)
from scrapegate.models.tier import ActionKind, Marketplace


def test_action_cost_is_table_lookup_times_count():
    params = DEFAULT_COST_MODEL.marketplaces[Marketplace.EBAY]

    assert action_cost_usd("ebay", ActionKind.FULL_SCRAPE) == params.full_scrape_cost_usd
    assert action_cost_usd("ebay", ActionKind.PARTIAL_FETCH, count=3) == pytest.approx(3 * params.partial_fetch_cost_usd)
    assert action_cost_usd("ebay", ActionKind.SIGNAL_CHECK) == params.signal_check_cost_usd


def test_signal_checks_use_no_proxy():
    for marketplace in Marketplace:
        assert action_proxy_gb(marketplace, ActionKind.SIGNAL_CHECK, count=10) == 0.0


def test_cost_ladder_is_ordered_for_every_marketplace():
    for marketplace in Marketplace:
        signal = action_cost_usd(marketplace, ActionKind.SIGNAL_CHECK)
        partial = action_cost_usd(marketplace, ActionKind.PARTIAL_FETCH)
        full = action_cost_usd(marketplace, ActionKind.FULL_SCRAPE)
        assert signal < partial < full


def test_unknown_marketplace_raises():
    with pytest.raises(UnknownMarketplaceError):
        action_cost_usd("etsy", ActionKind.FULL_SCRAPE)


def test_probabilities_are_clamped():
    """A huge delta rate saturates full at 1 and leaves nothing for partial."""
    full = expected_full_scrape_probability("facebook", 3600, 1_000)
    partial = expected_partial_fetch_probability("facebook", 3600, 1_000, full)

    assert full == 1.0
    assert partial == 0.0


def test_probabilities_never_exceed_one_jointly():
    for rate in (0.0, 0.5, 2.0, 10.0):
        full = expected_full_scrape_probability("vinted", 7200, rate)
        partial = expected_partial_fetch_probability("vinted", 7200, rate, full)
        assert 0.0 <= full <= 1.0
        assert 0.0 <= partial <= 1.0 - full


def test_expected_cost_per_refresh_matches_formula():
    params = DEFAULT_COST_MODEL.marketplaces[Marketplace.GUMTREE]
    interval, rate = 3600, 0.5
    full = params.full_scrape_base_prob + params.full_scrape_slope * rate
    partial = params.partial_fetch_base_prob + params.partial_fetch_slope * rate

    expected = params.signal_check_cost_usd + partial * params.partial_fetch_cost_usd + full * params.full_scrape_cost_usd
    assert expected_cost_per_refresh("gumtree", interval, rate) == pytest.approx(expected)

    expected_gb = partial * params.proxy_gb_per_partial_fetch + full * params.proxy_gb_per_full_scrape
    assert expected_proxy_gb_per_refresh("gumtree", interval, rate) == pytest.approx(expected_gb)


def test_refreshes_per_day_rejects_non_positive_interval():
    assert refreshes_per_day(3600) == 24
    with pytest.raises(ValueError):
        refreshes_per_day(0)


def test_forecast_daily_cost_scales_with_monitors():
    one = forecast_daily_cost("ebay", 21600, 0.2)
    five = forecast_daily_cost("ebay", 21600, 0.2, monitors=5)

    assert one.refreshes_per_day == 4
    assert five.cost_usd == pytest.approx(one.cost_usd * 5)
    assert five.proxy_gb == pytest.approx(one.proxy_gb * 5)
    assert one.cost_model_version == DEFAULT_COST_MODEL.version


def test_tier_ceiling_grows_with_tier():
    ceilings = [tier_daily_cost_ceiling_usd(t) for t in ("free", "basic", "pro", "elite", "enterprise")]
    assert ceilings == sorted(ceilings)


def test_estimate_daily_cost_counts_the_run_being_admitted():
    full = action_cost_usd("ebay", ActionKind.FULL_SCRAPE)
    assert estimate_daily_cost_usd("ebay", 0) == pytest.approx(full)
    assert estimate_daily_cost_usd("ebay", 4) == pytest.approx(5 * full)


def test_estimate_without_marketplace_uses_most_expensive_curve():
    most_expensive = max(p.full_scrape_cost_usd for p in DEFAULT_COST_MODEL.marketplaces.values())
    assert estimate_daily_cost_usd(None, 1) == pytest.approx(2 * most_expensive)


class TestCostModelProvider:
    def test_reload_from_file_replaces_table(self, tmp_path):
        raw = DEFAULT_COST_MODEL.model_dump(mode="json")
        raw["version"] = "override-2"
        path = tmp_path / "cost_model.json"
        path.write_text(json.dumps(raw), encoding="utf-8")

        provider = CostModelProvider(path=str(path))
        table = provider.reload()

        assert table.version == "override-2"
        assert provider.get().version == "override-2"

    def test_invalid_file_keeps_current_table(self, tmp_path):
        path = tmp_path / "cost_model.json"
        path.write_text("{not json", encoding="utf-8")

        provider = CostModelProvider(path=str(path))
        assert provider.reload().version == DEFAULT_COST_MODEL.version

    def test_missing_file_keeps_current_table(self, tmp_path):
        provider = CostModelProvider(path=str(tmp_path / "missing.json"))
        assert provider.reload() is DEFAULT_COST_MODEL

    def test_explicit_table_overrides_provider(self):
        custom = DEFAULT_COST_MODEL.model_copy(update={"version": "custom"})
        forecast = forecast_daily_cost("ebay", 3600, 0.0, table=custom)
        assert forecast.cost_model_version == "custom"
