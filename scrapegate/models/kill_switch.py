"""
scrapegate/models/kill_switch.py

Operator kill switches. The provenance of a config (``db``, ``cache`` or
``fallback``) decides fail-closed behaviour, not its field values.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from scrapegate.models.tier import Marketplace


class KillSwitchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    scrapers_enabled: bool
    ebay_enabled: bool
    facebook_enabled: bool
    vinted_enabled: bool
    gumtree_enabled: bool
    amazon_enabled: bool
    craigslist_enabled: bool
    realtime_enabled: bool
    scheduled_enabled: bool
    manual_enabled: bool
    demo_mode_enabled: bool = False
    demo_mode_expires_at: Optional[datetime] = None

    def marketplace_enabled(self, marketplace: Marketplace) -> bool:
        return bool(getattr(self, f"{marketplace.value}_enabled"))


class KillSwitchDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    code: Optional[str] = None
    message: Optional[str] = None
    reason: Optional[str] = None
