"""
scrapegate/features/economics/model.py

Versioned cost coefficients.

The numbers here are policy knobs (per-action USD, proxy GB per action and
the full/partial probability curves), not derived constants. They live in a
CostModelTable so an override file can replace them without a deploy, and
the table version travels with every enforcement decision.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from scrapegate.core.config import settings
from scrapegate.models.tier import Marketplace, TierKey

logger = logging.getLogger(__name__)


class MarketplaceCostParams(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    signal_check_cost_usd: float
    partial_fetch_cost_usd: float
    full_scrape_cost_usd: float
    proxy_gb_per_partial_fetch: float
    proxy_gb_per_full_scrape: float
    full_scrape_base_prob: float
    full_scrape_slope: float
    partial_fetch_base_prob: float
    partial_fetch_slope: float


class CostModelTable(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str
    marketplaces: Dict[Marketplace, MarketplaceCostParams]
    tier_daily_cost_ceiling_usd: Dict[TierKey, float]


DEFAULT_COST_MODEL = CostModelTable(
    version="tiered-refresh-1",
    marketplaces={
        Marketplace.FACEBOOK: MarketplaceCostParams(
            signal_check_cost_usd=0.0020,
            partial_fetch_cost_usd=0.0300,
            full_scrape_cost_usd=0.1200,
            proxy_gb_per_partial_fetch=0.006,
            proxy_gb_per_full_scrape=0.024,
            full_scrape_base_prob=0.08,
            full_scrape_slope=0.12,
            partial_fetch_base_prob=0.18,
            partial_fetch_slope=0.35,
        ),
        Marketplace.VINTED: MarketplaceCostParams(
            signal_check_cost_usd=0.0016,
            partial_fetch_cost_usd=0.0220,
            full_scrape_cost_usd=0.0850,
            proxy_gb_per_partial_fetch=0.004,
            proxy_gb_per_full_scrape=0.016,
            full_scrape_base_prob=0.06,
            full_scrape_slope=0.10,
            partial_fetch_base_prob=0.16,
            partial_fetch_slope=0.30,
        ),
        Marketplace.EBAY: MarketplaceCostParams(
            signal_check_cost_usd=0.0012,
            partial_fetch_cost_usd=0.0180,
            full_scrape_cost_usd=0.0600,
            proxy_gb_per_partial_fetch=0.003,
            proxy_gb_per_full_scrape=0.012,
            full_scrape_base_prob=0.04,
            full_scrape_slope=0.08,
            partial_fetch_base_prob=0.12,
            partial_fetch_slope=0.25,
        ),
        Marketplace.GUMTREE: MarketplaceCostParams(
            signal_check_cost_usd=0.0010,
            partial_fetch_cost_usd=0.0160,
            full_scrape_cost_usd=0.0500,
            proxy_gb_per_partial_fetch=0.0025,
            proxy_gb_per_full_scrape=0.010,
            full_scrape_base_prob=0.03,
            full_scrape_slope=0.06,
            partial_fetch_base_prob=0.10,
            partial_fetch_slope=0.22,
        ),
        # Residential proxies, heavy pages
        Marketplace.AMAZON: MarketplaceCostParams(
            signal_check_cost_usd=0.0018,
            partial_fetch_cost_usd=0.0260,
            full_scrape_cost_usd=0.1000,
            proxy_gb_per_partial_fetch=0.005,
            proxy_gb_per_full_scrape=0.020,
            full_scrape_base_prob=0.07,
            full_scrape_slope=0.11,
            partial_fetch_base_prob=0.17,
            partial_fetch_slope=0.32,
        ),
        Marketplace.CRAIGSLIST: MarketplaceCostParams(
            signal_check_cost_usd=0.0008,
            partial_fetch_cost_usd=0.0120,
            full_scrape_cost_usd=0.0400,
            proxy_gb_per_partial_fetch=0.002,
            proxy_gb_per_full_scrape=0.008,
            full_scrape_base_prob=0.03,
            full_scrape_slope=0.05,
            partial_fetch_base_prob=0.09,
            partial_fetch_slope=0.20,
        ),
    },
    tier_daily_cost_ceiling_usd={
        TierKey.FREE: 0.50,
        TierKey.BASIC: 2.50,
        TierKey.PRO: 8.00,
        TierKey.ELITE: 20.00,
        TierKey.ENTERPRISE: 60.00,
    },
)


class CostModelProvider:
    """
    Serves the active CostModelTable.

    ``reload()`` reads COST_MODEL_PATH (JSON). A missing or invalid file
    keeps the table already in service and logs the failure.
    """

    def __init__(self, table: CostModelTable = DEFAULT_COST_MODEL, path: Optional[str] = None):
        self._table = table
        self.path = path
        self._lock = threading.Lock()

    def get(self) -> CostModelTable:
        with self._lock:
            return self._table

    def set_table(self, table: CostModelTable) -> None:
        with self._lock:
            self._table = table
        logger.info("[economics] cost model set", extra={"cost_model_version": table.version})

    def reload(self) -> CostModelTable:
        path = self.path or settings.COST_MODEL_PATH
        if not path:
            return self.get()
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            table = CostModelTable.model_validate(raw)
        except (OSError, ValueError, ValidationError):
            logger.error(
                "[economics] cost model reload failed, keeping current table",
                extra={"path": path, "cost_model_version": self.get().version},
                exc_info=True,
            )
            return self.get()
        self.set_table(table)
        return table


cost_model_provider = CostModelProvider()
