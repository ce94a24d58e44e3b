"""
scrapegate/features/kill_switch/service.py

Operator kill switches.

A config loaded from the database is honoured flag by flag. A config whose
source is ``fallback`` (row missing, malformed or unreadable) blocks
everything with CONFIG_UNAVAILABLE, whatever its fields say.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import select, update

from scrapegate.core.database import get_db_session, scraper_kill_switches
from scrapegate.core.errors import ConfigUnavailableError, ScrapingDisabledError
from scrapegate.core.metrics import kill_switch_block_total
from scrapegate.core.providers import ConfigProvider, ConfigSource
from scrapegate.models.kill_switch import KillSwitchConfig, KillSwitchDecision
from scrapegate.models.tier import Marketplace, WorkerClass, parse_marketplace

logger = logging.getLogger(__name__)

KILL_SWITCH_ROW_ID = "default"


class KillSwitchCode:
    CONFIG_UNAVAILABLE = "CONFIG_UNAVAILABLE"
    SCRAPERS_DISABLED = "SCRAPERS_DISABLED"
    MARKETPLACE_DISABLED = "MARKETPLACE_DISABLED"
    WORKER_DISABLED = "WORKER_DISABLED"


SAFE_OFF_CONFIG = KillSwitchConfig(
    scrapers_enabled=False,
    ebay_enabled=False,
    facebook_enabled=False,
    vinted_enabled=False,
    gumtree_enabled=False,
    amazon_enabled=False,
    craigslist_enabled=False,
    realtime_enabled=False,
    scheduled_enabled=False,
    manual_enabled=False,
    demo_mode_enabled=False,
    demo_mode_expires_at=None,
)


def resolve_worker_class(job_type: str, monitor_id: Optional[str] = None) -> WorkerClass:
    if monitor_id:
        return WorkerClass.SCHEDULED
    if job_type == "price_check":
        return WorkerClass.REALTIME
    return WorkerClass.MANUAL


def _blocked(code: str, message: str, reason: str) -> KillSwitchDecision:
    kill_switch_block_total.inc({"code": code})
    return KillSwitchDecision(allowed=False, code=code, message=message, reason=reason)


def evaluate_kill_switch(
    config: Optional[KillSwitchConfig],
    marketplace: Union[str, Marketplace],
    worker_class: Union[str, WorkerClass],
    source: ConfigSource,
) -> KillSwitchDecision:
    """Global flag, then marketplace flag, then worker-class flag; first violation wins."""
    if source == "fallback" or config is None:
        return _blocked(
            KillSwitchCode.CONFIG_UNAVAILABLE,
            "Kill-switch config unavailable; scraping disabled",
            "config_unavailable",
        )

    if not config.scrapers_enabled:
        return _blocked(
            KillSwitchCode.SCRAPERS_DISABLED,
            "Scraping disabled by global kill switch",
            "scrapers_disabled",
        )

    market = parse_marketplace(marketplace)
    if not config.marketplace_enabled(market):
        return _blocked(
            KillSwitchCode.MARKETPLACE_DISABLED,
            f"{market.value.capitalize()} scraping disabled by kill switch",
            f"{market.value}_disabled",
        )

    worker = WorkerClass(worker_class)
    if not getattr(config, f"{worker.value}_enabled"):
        return _blocked(
            KillSwitchCode.WORKER_DISABLED,
            f"{worker.value.capitalize()} worker disabled by kill switch",
            f"{worker.value}_disabled",
        )

    return KillSwitchDecision(allowed=True)


@dataclass(frozen=True)
class DemoModeState:
    active: bool
    expires_at: Optional[datetime]
    expired: bool = False


def demo_mode_state(config: KillSwitchConfig, now: datetime) -> DemoModeState:
    """Demo mode is active until its expiry; an expired flag reads as inactive."""
    expires_at = config.demo_mode_expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if config.demo_mode_enabled and expires_at is not None and expires_at <= now:
        return DemoModeState(active=False, expires_at=None, expired=True)
    return DemoModeState(active=config.demo_mode_enabled, expires_at=expires_at)


def load_kill_switch_config() -> Tuple[KillSwitchConfig, ConfigSource]:
    """Read the ``default`` row. Missing or malformed rows fail closed."""
    with get_db_session() as session:
        row = session.execute(
            select(scraper_kill_switches).where(scraper_kill_switches.c.id == KILL_SWITCH_ROW_ID)
        ).mappings().first()

    if row is None:
        logger.warning("[kill_switch] config missing, defaulting to SAFE OFF")
        return SAFE_OFF_CONFIG, "fallback"

    data = {key: value for key, value in row.items() if key in KillSwitchConfig.model_fields}
    try:
        # strict: a non-boolean flag is malformed, not truthy
        return KillSwitchConfig.model_validate(data, strict=True), "db"
    except ValidationError:
        logger.warning("[kill_switch] config malformed, defaulting to SAFE OFF", exc_info=True)
        return SAFE_OFF_CONFIG, "fallback"


def build_kill_switch_provider(**kwargs) -> ConfigProvider[KillSwitchConfig]:
    return ConfigProvider("kill_switch", load_kill_switch_config, SAFE_OFF_CONFIG, **kwargs)


class KillSwitchService:
    """Provider-backed kill switch checks for the dispatch path."""

    def __init__(
        self,
        provider: Optional[ConfigProvider[KillSwitchConfig]] = None,
        on_demo_expired: Optional[Callable[[datetime], None]] = None,
    ):
        self.provider = provider or build_kill_switch_provider()
        self.on_demo_expired = on_demo_expired or disable_demo_mode

    def evaluate(self, marketplace: Union[str, Marketplace], worker_class: Union[str, WorkerClass]) -> KillSwitchDecision:
        config, source = self.provider.get()
        return evaluate_kill_switch(config, marketplace, worker_class, source)

    def assert_scraping_enabled(self, marketplace: Union[str, Marketplace], worker_class: Union[str, WorkerClass]) -> None:
        decision = self.evaluate(marketplace, worker_class)
        if decision.allowed:
            return
        logger.warning(
            "[kill_switch] BLOCK",
            extra={"marketplace": str(getattr(marketplace, "value", marketplace)), "code": decision.code, "reason": decision.reason},
        )
        error_cls = ConfigUnavailableError if decision.code == KillSwitchCode.CONFIG_UNAVAILABLE else ScrapingDisabledError
        raise error_cls(
            decision.message or "Scraping disabled by kill switch",
            code=decision.code,
            details={"reason": decision.reason},
        )

    def demo_mode(self, now: datetime) -> DemoModeState:
        """Demo state; an expired demo flag is switched off in storage."""
        config, source = self.provider.get()
        if source == "fallback":
            return DemoModeState(active=False, expires_at=None)
        state = demo_mode_state(config, now)
        if state.expired:
            logger.warning("[kill_switch] demo mode expired; disabling")
            self.on_demo_expired(now)
            self.provider.invalidate()
        return state


def disable_demo_mode(now: datetime) -> None:
    with get_db_session() as session:
        session.execute(
            update(scraper_kill_switches)
            .where(scraper_kill_switches.c.id == KILL_SWITCH_ROW_ID)
            .values(demo_mode_enabled=False, demo_mode_expires_at=None, updated_at=now)
        )
