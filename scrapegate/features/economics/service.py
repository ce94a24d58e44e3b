"""
scrapegate/features/economics/service.py

Cost model: marketplace + action -> USD and proxy GB, expected spend of a
monitor refresh, tier daily cost ceilings. Pure functions over a
CostModelTable (the provider's active table unless one is passed).
"""

from dataclasses import dataclass
from typing import Optional, Union

from scrapegate.core.errors import UnknownMarketplaceError
from scrapegate.features.economics.model import CostModelTable, MarketplaceCostParams, cost_model_provider
from scrapegate.models.tier import ActionKind, Marketplace, TierKey, parse_marketplace, parse_tier

SECONDS_PER_DAY = 86400


def _table(table: Optional[CostModelTable]) -> CostModelTable:
    return table if table is not None else cost_model_provider.get()


def get_marketplace_params(
    marketplace: Union[str, Marketplace],
    table: Optional[CostModelTable] = None,
) -> MarketplaceCostParams:
    key = parse_marketplace(marketplace)
    params = _table(table).marketplaces.get(key)
    if params is None:
        raise UnknownMarketplaceError(
            f"No cost curve for marketplace: {key.value}", details={"marketplace": key.value}
        )
    return params


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def action_cost_usd(
    marketplace: Union[str, Marketplace],
    action: ActionKind,
    count: int = 1,
    table: Optional[CostModelTable] = None,
) -> float:
    params = get_marketplace_params(marketplace, table)
    action = ActionKind(action)
    if action is ActionKind.SIGNAL_CHECK:
        unit = params.signal_check_cost_usd
    elif action is ActionKind.PARTIAL_FETCH:
        unit = params.partial_fetch_cost_usd
    else:
        unit = params.full_scrape_cost_usd
    return unit * count


def action_proxy_gb(
    marketplace: Union[str, Marketplace],
    action: ActionKind,
    count: int = 1,
    table: Optional[CostModelTable] = None,
) -> float:
    """Signal checks ride on cached pages and use no proxy bandwidth."""
    params = get_marketplace_params(marketplace, table)
    action = ActionKind(action)
    if action is ActionKind.PARTIAL_FETCH:
        return params.proxy_gb_per_partial_fetch * count
    if action is ActionKind.FULL_SCRAPE:
        return params.proxy_gb_per_full_scrape * count
    return 0.0


def refreshes_per_day(refresh_interval_seconds: float) -> float:
    if refresh_interval_seconds <= 0:
        raise ValueError("refresh_interval_seconds must be positive")
    return SECONDS_PER_DAY / refresh_interval_seconds


def expected_full_scrape_probability(
    marketplace: Union[str, Marketplace],
    refresh_interval_seconds: float,
    delta_rate_per_hour: float,
    table: Optional[CostModelTable] = None,
) -> float:
    params = get_marketplace_params(marketplace, table)
    interval_hours = refresh_interval_seconds / 3600
    return clamp(
        params.full_scrape_base_prob + params.full_scrape_slope * (delta_rate_per_hour * interval_hours),
        0.0,
        1.0,
    )


def expected_partial_fetch_probability(
    marketplace: Union[str, Marketplace],
    refresh_interval_seconds: float,
    delta_rate_per_hour: float,
    full_scrape_prob: float,
    table: Optional[CostModelTable] = None,
) -> float:
    # Capped at 1 - full so the two never exceed 1 jointly
    params = get_marketplace_params(marketplace, table)
    interval_hours = refresh_interval_seconds / 3600
    return clamp(
        params.partial_fetch_base_prob + params.partial_fetch_slope * (delta_rate_per_hour * interval_hours),
        0.0,
        1.0 - full_scrape_prob,
    )


def _probabilities(marketplace, refresh_interval_seconds, delta_rate_per_hour, table):
    full = expected_full_scrape_probability(marketplace, refresh_interval_seconds, delta_rate_per_hour, table)
    partial = expected_partial_fetch_probability(
        marketplace, refresh_interval_seconds, delta_rate_per_hour, full, table
    )
    return full, partial


def expected_cost_per_refresh(
    marketplace: Union[str, Marketplace],
    refresh_interval_seconds: float,
    delta_rate_per_hour: float,
    table: Optional[CostModelTable] = None,
) -> float:
    params = get_marketplace_params(marketplace, table)
    full, partial = _probabilities(marketplace, refresh_interval_seconds, delta_rate_per_hour, table)
    return (
        params.signal_check_cost_usd
        + partial * params.partial_fetch_cost_usd
        + full * params.full_scrape_cost_usd
    )


def expected_proxy_gb_per_refresh(
    marketplace: Union[str, Marketplace],
    refresh_interval_seconds: float,
    delta_rate_per_hour: float,
    table: Optional[CostModelTable] = None,
) -> float:
    params = get_marketplace_params(marketplace, table)
    full, partial = _probabilities(marketplace, refresh_interval_seconds, delta_rate_per_hour, table)
    return partial * params.proxy_gb_per_partial_fetch + full * params.proxy_gb_per_full_scrape


@dataclass(frozen=True)
class DailyForecast:
    marketplace: Marketplace
    refreshes_per_day: float
    cost_usd: float
    proxy_gb: float
    cost_model_version: str


def forecast_daily_cost(
    marketplace: Union[str, Marketplace],
    refresh_interval_seconds: float,
    delta_rate_per_hour: float,
    monitors: int = 1,
    table: Optional[CostModelTable] = None,
) -> DailyForecast:
    """Expected daily spend of ``monitors`` monitors refreshed every interval."""
    active = _table(table)
    runs = refreshes_per_day(refresh_interval_seconds) * monitors
    return DailyForecast(
        marketplace=parse_marketplace(marketplace),
        refreshes_per_day=runs,
        cost_usd=runs * expected_cost_per_refresh(marketplace, refresh_interval_seconds, delta_rate_per_hour, active),
        proxy_gb=runs * expected_proxy_gb_per_refresh(marketplace, refresh_interval_seconds, delta_rate_per_hour, active),
        cost_model_version=active.version,
    )


def tier_daily_cost_ceiling_usd(tier: Union[str, TierKey], table: Optional[CostModelTable] = None) -> float:
    return _table(table).tier_daily_cost_ceiling_usd[parse_tier(tier)]


def estimate_daily_cost_usd(
    marketplace: Optional[Union[str, Marketplace]],
    daily_runs: int,
    table: Optional[CostModelTable] = None,
) -> float:
    """
    Today's runs plus the one being admitted, priced as full scrapes.

    Without a marketplace the most expensive curve in the table is used.
    """
    active = _table(table)
    if marketplace is None:
        unit = max(params.full_scrape_cost_usd for params in active.marketplaces.values())
    else:
        unit = get_marketplace_params(marketplace, active).full_scrape_cost_usd
    return (daily_runs + 1) * unit
