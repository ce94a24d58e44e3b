"""
scrapegate/models/tier.py

Closed vocabularies shared by every decision function: tenant tiers,
marketplaces, the action quality ladder and the public enforcement modes.

Parsing helpers raise on unknown keys. An unknown tier or marketplace is a
caller bug, never a runtime condition to default away.
"""

from enum import Enum
from typing import Union

from scrapegate.core.errors import UnknownMarketplaceError, UnknownTierError


class TierKey(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ELITE = "elite"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER = [TierKey.FREE, TierKey.BASIC, TierKey.PRO, TierKey.ELITE, TierKey.ENTERPRISE]


class Marketplace(str, Enum):
    EBAY = "ebay"
    FACEBOOK = "facebook"
    VINTED = "vinted"
    GUMTREE = "gumtree"
    AMAZON = "amazon"
    CRAIGSLIST = "craigslist"


class ActionKind(str, Enum):
    """Quality ladder: full_scrape > partial_fetch > signal_check."""

    FULL_SCRAPE = "full_scrape"
    PARTIAL_FETCH = "partial_fetch"
    SIGNAL_CHECK = "signal_check"

    @property
    def rank(self) -> int:
        return _ACTION_RANK[self]

    def downgrade(self) -> "ActionKind":
        """One step down the ladder; signal_check is the floor."""
        if self is ActionKind.FULL_SCRAPE:
            return ActionKind.PARTIAL_FETCH
        return ActionKind.SIGNAL_CHECK


_ACTION_RANK = {
    ActionKind.SIGNAL_CHECK: 0,
    ActionKind.PARTIAL_FETCH: 1,
    ActionKind.FULL_SCRAPE: 2,
}


class EnforcementMode(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"
    SIGNAL = "SIGNAL"
    BLOCK = "BLOCK"

    @classmethod
    def from_action(cls, action: ActionKind) -> "EnforcementMode":
        return _ACTION_TO_MODE[action]

    def to_action(self) -> ActionKind:
        if self is EnforcementMode.BLOCK:
            raise ValueError("BLOCK has no action")
        return _MODE_TO_ACTION[self]


_ACTION_TO_MODE = {
    ActionKind.FULL_SCRAPE: EnforcementMode.FULL,
    ActionKind.PARTIAL_FETCH: EnforcementMode.PARTIAL,
    ActionKind.SIGNAL_CHECK: EnforcementMode.SIGNAL,
}
_MODE_TO_ACTION = {mode: action for action, mode in _ACTION_TO_MODE.items()}


class WorkerClass(str, Enum):
    REALTIME = "realtime"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


def parse_tier(value: Union[str, TierKey]) -> TierKey:
    try:
        return TierKey(value)
    except ValueError:
        raise UnknownTierError(f"Unknown tier: {value!r}", details={"tier": str(value)}) from None


def parse_marketplace(value: Union[str, Marketplace]) -> Marketplace:
    try:
        return Marketplace(value)
    except ValueError:
        raise UnknownMarketplaceError(
            f"Unknown marketplace: {value!r}", details={"marketplace": str(value)}
        ) from None
