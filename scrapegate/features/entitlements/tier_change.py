"""
scrapegate/features/entitlements/tier_change.py

Telemetry side effects of a subscription tier change.

- Downgrade: every telemetry row of the user goes on cooldown so the next
  enforcement call short-circuits on ``cooldown_active``.
- New subscription or upgrade: today's counters start from zero.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from scrapegate.core.config import settings
from scrapegate.features.entitlements.service import _normalize_now
from scrapegate.features.telemetry.service import day_key
from scrapegate.features.telemetry.store import TelemetryStore
from scrapegate.models.tier import TierKey, parse_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierChangeEffect:
    kind: str  # downgrade | upgrade | new | unchanged
    rows_touched: int = 0
    cooldown_until: Optional[datetime] = None


def apply_tier_change(
    store: TelemetryStore,
    user_id: str,
    prev: Optional[Union[str, TierKey]],
    next: Union[str, TierKey],
    now: datetime,
) -> TierChangeEffect:
    now = _normalize_now(now)
    next_tier = parse_tier(next)

    if prev is None:
        touched = store.reset_day(user_id, day_key(now), now)
        logger.info("[tier_change] new subscription, counters reset", extra={"user_id": user_id, "tier": next_tier.value})
        return TierChangeEffect(kind="new", rows_touched=touched)

    prev_tier = parse_tier(prev)
    if next_tier.rank < prev_tier.rank:
        until = now + timedelta(hours=settings.TIER_DOWNGRADE_COOLDOWN_HOURS)
        touched = store.set_cooldown_for_user(user_id, until)
        logger.info(
            "[tier_change] downgrade, cooldown applied",
            extra={"user_id": user_id, "from": prev_tier.value, "to": next_tier.value, "cooldown_until": until.isoformat()},
        )
        return TierChangeEffect(kind="downgrade", rows_touched=touched, cooldown_until=until)

    if next_tier.rank > prev_tier.rank:
        touched = store.reset_day(user_id, day_key(now), now)
        logger.info(
            "[tier_change] upgrade, counters reset",
            extra={"user_id": user_id, "from": prev_tier.value, "to": next_tier.value},
        )
        return TierChangeEffect(kind="upgrade", rows_touched=touched)

    return TierChangeEffect(kind="unchanged")
