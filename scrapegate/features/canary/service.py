"""
scrapegate/features/canary/service.py

Canary ramp per target (marketplace or ``default``).

A job goes to the canary path with probability ramp_percent / 100. When the
observability gate trips, the ramp rolls back to its previous percent.
Nothing is placed on canary while the gate is closed or demo mode is on.
"""

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, select, update

from scrapegate.core.database import canary_ramps, get_db_session
from scrapegate.core.providers import ConfigSource, KeyedConfigProvider

logger = logging.getLogger(__name__)

DEFAULT_TARGET = "default"


class CanaryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    ramp_percent: int = 0
    previous_percent: int = 0


@dataclass(frozen=True)
class CanaryAssignment:
    canary: bool
    ramp_percent: int
    skipped_reason: Optional[str] = None


def normalize_ramp_percent(value) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    if number > 100:
        return 100
    return math.floor(number)


def choose_canary(ramp_percent, random_value: Optional[float] = None) -> bool:
    value = random.random() if random_value is None else random_value
    return value * 100 < normalize_ramp_percent(ramp_percent)


def assign_canary(
    ramp_percent,
    *,
    gate_open: bool = True,
    demo_mode: bool = False,
    random_value: Optional[float] = None,
) -> CanaryAssignment:
    normalized = normalize_ramp_percent(ramp_percent)
    if not gate_open:
        return CanaryAssignment(canary=False, ramp_percent=normalized, skipped_reason="gate_closed")
    if demo_mode:
        return CanaryAssignment(canary=False, ramp_percent=normalized, skipped_reason="demo_mode")
    if normalized <= 0:
        return CanaryAssignment(canary=False, ramp_percent=normalized)
    return CanaryAssignment(canary=choose_canary(normalized, random_value), ramp_percent=normalized)


def _row(session, target: str):
    return session.execute(select(canary_ramps).where(canary_ramps.c.id == target)).mappings().first()


def load_canary_config(target: str) -> Tuple[CanaryConfig, ConfigSource]:
    """Target row, else the ``default`` row, else a zero ramp."""
    with get_db_session() as session:
        row = _row(session, target) or _row(session, DEFAULT_TARGET)
    if row is None:
        return CanaryConfig(), "db"
    return CanaryConfig(
        ramp_percent=int(row["ramp_percent"] or 0),
        previous_percent=int(row["previous_percent"] or 0),
    ), "db"


class CanaryService:
    def __init__(
        self,
        provider: Optional[KeyedConfigProvider[str, CanaryConfig]] = None,
        random_fn: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.provider = provider or KeyedConfigProvider("canary", load_canary_config, CanaryConfig())
        self.random_fn = random_fn
        self.clock = clock

    def get_config(self, target: str) -> CanaryConfig:
        config, _ = self.provider.get(target)
        return config

    def assign(self, target: str, *, gate_open: bool = True, demo_mode: bool = False) -> CanaryAssignment:
        config = self.get_config(target)
        return assign_canary(
            config.ramp_percent,
            gate_open=gate_open,
            demo_mode=demo_mode,
            random_value=self.random_fn(),
        )

    def rollback(self, target: str) -> bool:
        """Restore the previous ramp; returns False when there is nothing to roll back."""
        config = self.get_config(target)
        if config.ramp_percent == config.previous_percent:
            return False
        with get_db_session() as session:
            result = session.execute(
                update(canary_ramps)
                .where(canary_ramps.c.id == target)
                .values(ramp_percent=config.previous_percent, updated_at=self.clock())
            )
        if result.rowcount == 0:
            # Config came from the default row; target has no row of its own
            logger.warning("[canary] no ramp row to roll back", extra={"target": target})
            return False
        self.provider.invalidate(target)
        logger.warning(
            "[canary] ramp rolled back after gate trip",
            extra={"target": target, "from": config.ramp_percent, "to": config.previous_percent},
        )
        return True

    def update_ramp(self, target: str, ramp_percent) -> CanaryConfig:
        normalized = normalize_ramp_percent(ramp_percent)
        now = self.clock()
        with get_db_session() as session:
            existing = _row(session, target)
            previous = int(existing["ramp_percent"] or 0) if existing else 0
            if existing:
                session.execute(
                    update(canary_ramps)
                    .where(canary_ramps.c.id == target)
                    .values(ramp_percent=normalized, previous_percent=previous, updated_at=now)
                )
            else:
                session.execute(
                    insert(canary_ramps).values(
                        id=target, ramp_percent=normalized, previous_percent=previous, updated_at=now
                    )
                )
        self.provider.invalidate(target)
        logger.info("[canary] ramp updated", extra={"target": target, "ramp_percent": normalized, "previous_percent": previous})
        return CanaryConfig(ramp_percent=normalized, previous_percent=previous)
