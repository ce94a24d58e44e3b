"""
scrapegate/features/marketplace_rate/service.py

Marketplace rate shaping: disabled flag, cooldown window, concurrency,
jobs per minute and error spikes, checked in that order.

An error spike puts the marketplace on cooldown for ``cooldown_seconds``.
Demo mode can only tighten limits.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import select, update

from scrapegate.core.config import settings
from scrapegate.core.database import get_db_session, marketplace_rate_limits
from scrapegate.core.errors import MarketplaceRateLimitedError
from scrapegate.core.metrics import marketplace_rate_block_total
from scrapegate.core.providers import ConfigSource, KeyedConfigProvider
from scrapegate.models.marketplace_rate import (
    MarketplaceRateConfig,
    MarketplaceRateDecision,
    MarketplaceRateMetrics,
    RateOverrides,
)
from scrapegate.models.tier import Marketplace

logger = logging.getLogger(__name__)

DEFAULT_ROW_ID = "default"


class MarketplaceRateCode:
    CONFIG_UNAVAILABLE = "MARKETPLACE_CONFIG_UNAVAILABLE"
    DISABLED = "MARKETPLACE_DISABLED"
    COOLDOWN = "MARKETPLACE_COOLDOWN"
    CONCURRENCY_LIMIT = "MARKETPLACE_CONCURRENCY_LIMIT"
    JOBS_PER_MINUTE = "MARKETPLACE_RATE_LIMIT"
    ERROR_SPIKE = "MARKETPLACE_ERROR_SPIKE"


SAFE_RATE_CONFIG = MarketplaceRateConfig(
    enabled=False,
    max_concurrency=0,
    jobs_per_minute=0,
    error_threshold=0,
    cooldown_seconds=0,
)


def apply_demo_overrides(config: MarketplaceRateConfig, overrides: Optional[RateOverrides] = None) -> MarketplaceRateConfig:
    if overrides is None:
        return config

    def pick(current, override, choose):
        return current if override is None else choose(current, override)

    return config.model_copy(
        update={
            "max_concurrency": pick(config.max_concurrency, overrides.max_concurrency, min),
            "jobs_per_minute": pick(config.jobs_per_minute, overrides.jobs_per_minute, min),
            "error_threshold": pick(config.error_threshold, overrides.error_threshold, min),
            "cooldown_seconds": pick(config.cooldown_seconds, overrides.cooldown_seconds, max),
        }
    )


def demo_overrides_from_settings() -> RateOverrides:
    return RateOverrides(
        max_concurrency=settings.DEMO_RATE_MAX_CONCURRENCY,
        jobs_per_minute=settings.DEMO_RATE_JOBS_PER_MINUTE,
        error_threshold=settings.DEMO_RATE_ERROR_THRESHOLD,
        cooldown_seconds=settings.DEMO_RATE_COOLDOWN_SECONDS,
    )


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def evaluate_marketplace_rate(
    config: MarketplaceRateConfig,
    metrics: MarketplaceRateMetrics,
    now: datetime,
) -> MarketplaceRateDecision:
    if not config.enabled:
        return MarketplaceRateDecision(allowed=False, code=MarketplaceRateCode.DISABLED, reason="disabled")

    cooldown_until = _utc(config.cooldown_until)
    if cooldown_until is not None and cooldown_until > _utc(now):
        return MarketplaceRateDecision(
            allowed=False,
            code=MarketplaceRateCode.COOLDOWN,
            reason="cooldown",
            cooldown_until=cooldown_until,
        )

    if metrics.running >= config.max_concurrency:
        return MarketplaceRateDecision(allowed=False, code=MarketplaceRateCode.CONCURRENCY_LIMIT, reason="max_concurrency")

    if metrics.jobs_per_minute >= config.jobs_per_minute:
        return MarketplaceRateDecision(allowed=False, code=MarketplaceRateCode.JOBS_PER_MINUTE, reason="jobs_per_minute")

    if metrics.error_rate_percent >= config.error_threshold:
        return MarketplaceRateDecision(allowed=False, code=MarketplaceRateCode.ERROR_SPIKE, reason="error_spike")

    return MarketplaceRateDecision(allowed=True)


def _row(session, row_id: str):
    return session.execute(
        select(marketplace_rate_limits).where(marketplace_rate_limits.c.id == row_id)
    ).mappings().first()


def load_marketplace_rate_config(marketplace: str) -> Tuple[MarketplaceRateConfig, ConfigSource]:
    """Marketplace row, else the ``default`` row. Neither present fails closed."""
    with get_db_session() as session:
        row = _row(session, marketplace) or _row(session, DEFAULT_ROW_ID)

    if row is None:
        logger.warning("[marketplace_rate] config missing, failing closed", extra={"marketplace": marketplace})
        return SAFE_RATE_CONFIG, "fallback"

    data = {key: value for key, value in row.items() if key in MarketplaceRateConfig.model_fields}
    try:
        return MarketplaceRateConfig.model_validate(data), "db"
    except ValidationError:
        logger.warning("[marketplace_rate] config malformed, failing closed", extra={"marketplace": marketplace}, exc_info=True)
        return SAFE_RATE_CONFIG, "fallback"


def start_cooldown(marketplace: str, until: datetime, now: datetime) -> None:
    with get_db_session() as session:
        result = session.execute(
            update(marketplace_rate_limits)
            .where(marketplace_rate_limits.c.id == marketplace)
            .values(cooldown_until=until, updated_at=now)
        )
        if result.rowcount == 0:
            session.execute(
                update(marketplace_rate_limits)
                .where(marketplace_rate_limits.c.id == DEFAULT_ROW_ID)
                .values(cooldown_until=until, updated_at=now)
            )


class MarketplaceRateService:
    """
    Rate shaping backed by a keyed config provider.

    ``metrics_loader(marketplace)`` reads live job counts for the marketplace
    from the queue, which lives outside this package.
    """

    def __init__(
        self,
        metrics_loader: Callable[[str], MarketplaceRateMetrics],
        provider: Optional[KeyedConfigProvider[str, MarketplaceRateConfig]] = None,
        on_error_spike: Optional[Callable[[str, datetime, datetime], None]] = None,
    ):
        self.metrics_loader = metrics_loader
        self.provider = provider or KeyedConfigProvider(
            "marketplace_rate", load_marketplace_rate_config, SAFE_RATE_CONFIG
        )
        self.on_error_spike = on_error_spike or start_cooldown

    def evaluate(
        self,
        marketplace: Union[str, Marketplace],
        now: datetime,
        overrides: Optional[RateOverrides] = None,
    ) -> MarketplaceRateDecision:
        market = str(getattr(marketplace, "value", marketplace))
        config, source = self.provider.get(market)
        if source == "fallback":
            return MarketplaceRateDecision(
                allowed=False, code=MarketplaceRateCode.CONFIG_UNAVAILABLE, reason="config_unavailable"
            )
        effective = apply_demo_overrides(config, overrides)
        decision = evaluate_marketplace_rate(effective, self.metrics_loader(market), now)

        if decision.code == MarketplaceRateCode.ERROR_SPIKE:
            until = now + timedelta(seconds=effective.cooldown_seconds)
            self.on_error_spike(market, until, now)
            self.provider.invalidate(market)
            decision = decision.model_copy(update={"cooldown_until": until})
        return decision

    def assert_within_limits(
        self,
        marketplace: Union[str, Marketplace],
        now: datetime,
        overrides: Optional[RateOverrides] = None,
    ) -> MarketplaceRateDecision:
        decision = self.evaluate(marketplace, now, overrides)
        if decision.allowed:
            return decision
        market = str(getattr(marketplace, "value", marketplace))
        marketplace_rate_block_total.inc({"marketplace": market, "code": decision.code})
        logger.warning(
            "[marketplace_rate] BLOCK",
            extra={"marketplace": market, "code": decision.code, "reason": decision.reason},
        )
        raise MarketplaceRateLimitedError(
            "Marketplace rate limit reached",
            code=decision.code,
            status_code=503 if decision.code == MarketplaceRateCode.CONFIG_UNAVAILABLE else None,
            details={
                "reason": decision.reason,
                "cooldown_until": decision.cooldown_until.isoformat() if decision.cooldown_until else None,
            },
        )
