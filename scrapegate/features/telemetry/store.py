"""
scrapegate/features/telemetry/store.py

Telemetry stores keyed by (user_id, marketplace, day_key).

Every implementation applies increments atomically (increment-by-amount,
never read-modify-write from the caller's side):
- InMemoryTelemetryStore: lock-guarded dict (tests, single process)
- SqlTelemetryStore: UPDATE col = col + :delta, INSERT on miss
- RedisTelemetryStore: HINCRBYFLOAT in one pipeline
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple, Union

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from scrapegate.core.config import settings
from scrapegate.core.database import get_db_session, usage_telemetry
from scrapegate.features.telemetry.service import day_start, to_hash_increments
from scrapegate.models.telemetry import RecentTelemetry, TelemetryCounters
from scrapegate.models.tier import Marketplace, parse_marketplace

logger = logging.getLogger(__name__)

MarketplaceKey = Union[str, Marketplace]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TelemetryStore(Protocol):
    """Counters for one tenant, marketplace and UTC day."""

    def get_recent(self, user_id: str, marketplace: MarketplaceKey, day_key: str) -> RecentTelemetry:
        """Today's counters and cooldown; zeros when no row exists."""
        ...

    def increment(self, user_id: str, marketplace: MarketplaceKey, day_key: str, delta: TelemetryCounters) -> None:
        """Atomically add ``delta`` to the row, creating it if needed."""
        ...

    def set_cooldown(self, user_id: str, marketplace: MarketplaceKey, day_key: str, until: datetime) -> None:
        ...

    def set_cooldown_for_user(self, user_id: str, until: datetime) -> int:
        """Put every existing row of the user on cooldown; returns rows touched."""
        ...

    def reset_day(self, user_id: str, day_key: str, now: datetime) -> int:
        """Zero the user's counters for one day (cooldowns are kept)."""
        ...


class InMemoryTelemetryStore:
    def __init__(self):
        self._rows: Dict[Tuple[str, str, str], Dict[str, object]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _empty_row(day_key: str) -> Dict[str, object]:
        return {
            "full_runs": 0,
            "partial_runs": 0,
            "signal_checks": 0,
            "proxy_gb_estimated": 0.0,
            "cost_usd_estimated": 0.0,
            "cooldown_until": None,
            "last_reset_at": day_start(day_key),
        }

    def get_recent(self, user_id, marketplace, day_key) -> RecentTelemetry:
        key = (user_id, parse_marketplace(marketplace).value, day_key)
        with self._lock:
            row = dict(self._rows.get(key) or self._empty_row(day_key))
        row.pop("last_reset_at", None)
        return RecentTelemetry(**row)

    def increment(self, user_id, marketplace, day_key, delta: TelemetryCounters) -> None:
        key = (user_id, parse_marketplace(marketplace).value, day_key)
        with self._lock:
            row = self._rows.setdefault(key, self._empty_row(day_key))
            row["full_runs"] += delta.full_scrapes
            row["partial_runs"] += delta.partial_fetches
            row["signal_checks"] += delta.signal_checks
            row["proxy_gb_estimated"] += delta.proxy_gb_estimated
            row["cost_usd_estimated"] += delta.cost_usd_estimated

    def set_cooldown(self, user_id, marketplace, day_key, until: datetime) -> None:
        key = (user_id, parse_marketplace(marketplace).value, day_key)
        with self._lock:
            row = self._rows.setdefault(key, self._empty_row(day_key))
            row["cooldown_until"] = _utc(until)

    def set_cooldown_for_user(self, user_id: str, until: datetime) -> int:
        touched = 0
        with self._lock:
            for (row_user, _, _), row in self._rows.items():
                if row_user == user_id:
                    row["cooldown_until"] = _utc(until)
                    touched += 1
        return touched

    def reset_day(self, user_id: str, day_key: str, now: datetime) -> int:
        touched = 0
        with self._lock:
            for (row_user, _, row_day), row in self._rows.items():
                if row_user == user_id and row_day == day_key:
                    cooldown = row["cooldown_until"]
                    row.update(self._empty_row(day_key))
                    row["cooldown_until"] = cooldown
                    row["last_reset_at"] = _utc(now)
                    touched += 1
        return touched

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()


class SqlTelemetryStore:
    """usage_telemetry table via SQLAlchemy Core."""

    MAX_INSERT_RETRIES = 3

    def _where(self, user_id: str, marketplace: str, day_key: str):
        return and_(
            usage_telemetry.c.user_id == user_id,
            usage_telemetry.c.marketplace == marketplace,
            usage_telemetry.c.day_key == day_key,
        )

    def get_recent(self, user_id, marketplace, day_key) -> RecentTelemetry:
        market = parse_marketplace(marketplace).value
        with get_db_session() as session:
            row = session.execute(
                select(usage_telemetry).where(self._where(user_id, market, day_key))
            ).mappings().first()
        if row is None:
            return RecentTelemetry()
        return RecentTelemetry(
            full_runs=row["full_runs"],
            partial_runs=row["partial_runs"],
            signal_checks=row["signal_checks"],
            proxy_gb_estimated=row["proxy_gb_estimated"],
            cost_usd_estimated=row["cost_usd_estimated"],
            cooldown_until=_utc(row["cooldown_until"]),
        )

    def _upsert(self, user_id: str, market: str, day_key: str, set_values: dict, insert_values: dict) -> None:
        now = datetime.now(timezone.utc)
        for attempt in range(self.MAX_INSERT_RETRIES):
            try:
                with get_db_session() as session:
                    result = session.execute(
                        update(usage_telemetry)
                        .where(self._where(user_id, market, day_key))
                        .values(updated_at=now, **set_values)
                    )
                    if result.rowcount:
                        return
                    session.execute(
                        insert(usage_telemetry).values(
                            user_id=user_id,
                            marketplace=market,
                            day_key=day_key,
                            last_reset_at=day_start(day_key),
                            created_at=now,
                            updated_at=now,
                            **insert_values,
                        )
                    )
                return
            except IntegrityError:
                # Lost the insert race; the row exists now, so the UPDATE path wins
                logger.info(
                    "[telemetry] insert race, retrying",
                    extra={"user_id": user_id, "marketplace": market, "day_key": day_key, "attempt": attempt + 1},
                )
        raise RuntimeError(f"usage_telemetry upsert failed after {self.MAX_INSERT_RETRIES} attempts")

    def increment(self, user_id, marketplace, day_key, delta: TelemetryCounters) -> None:
        market = parse_marketplace(marketplace).value
        c = usage_telemetry.c
        self._upsert(
            user_id,
            market,
            day_key,
            set_values={
                "full_runs": c.full_runs + delta.full_scrapes,
                "partial_runs": c.partial_runs + delta.partial_fetches,
                "signal_checks": c.signal_checks + delta.signal_checks,
                "proxy_gb_estimated": c.proxy_gb_estimated + delta.proxy_gb_estimated,
                "cost_usd_estimated": c.cost_usd_estimated + delta.cost_usd_estimated,
            },
            insert_values={
                "full_runs": delta.full_scrapes,
                "partial_runs": delta.partial_fetches,
                "signal_checks": delta.signal_checks,
                "proxy_gb_estimated": delta.proxy_gb_estimated,
                "cost_usd_estimated": delta.cost_usd_estimated,
            },
        )

    def set_cooldown(self, user_id, marketplace, day_key, until: datetime) -> None:
        market = parse_marketplace(marketplace).value
        # Stored naive-UTC on SQLite, aware on Postgres; read back through _utc
        values = {"cooldown_until": _utc(until)}
        self._upsert(user_id, market, day_key, set_values=values, insert_values=values)

    def set_cooldown_for_user(self, user_id: str, until: datetime) -> int:
        with get_db_session() as session:
            result = session.execute(
                update(usage_telemetry)
                .where(usage_telemetry.c.user_id == user_id)
                .values(cooldown_until=_utc(until), updated_at=datetime.now(timezone.utc))
            )
            return result.rowcount or 0

    def reset_day(self, user_id: str, day_key: str, now: datetime) -> int:
        with get_db_session() as session:
            result = session.execute(
                update(usage_telemetry)
                .where(and_(usage_telemetry.c.user_id == user_id, usage_telemetry.c.day_key == day_key))
                .values(
                    full_runs=0,
                    partial_runs=0,
                    signal_checks=0,
                    proxy_gb_estimated=0.0,
                    cost_usd_estimated=0.0,
                    last_reset_at=_utc(now),
                    updated_at=_utc(now),
                )
            )
            return result.rowcount or 0


# Redis hash field -> RecentTelemetry attribute
_REDIS_TO_RECENT = {
    "full_scrapes": "full_runs",
    "partial_fetches": "partial_runs",
    "signal_checks": "signal_checks",
    "proxy_gb_estimated": "proxy_gb_estimated",
    "cost_usd_estimated": "cost_usd_estimated",
}

_INT_FIELDS = {"full_runs", "partial_runs", "signal_checks"}


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisTelemetryStore:
    """
    One hash per (user, marketplace, day) plus a per-user daily rollup.

    Keys follow telemetry_keys(): ``{prefix}:{user}:{marketplace}:{day}``
    and ``{prefix}:{user}:{day}``. Hashes expire after ``ttl_seconds``.
    """

    def __init__(self, client, prefix: Optional[str] = None, ttl_seconds: int = 3 * 86400):
        self.client = client
        self.prefix = prefix or settings.TELEMETRY_KEY_PREFIX
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: Optional[str] = None, **kwargs) -> "RedisTelemetryStore":
        from redis import Redis

        return cls(Redis.from_url(url or settings.REDIS_URL), **kwargs)

    def _key(self, user_id: str, marketplace: str, day_key: str) -> str:
        return f"{self.prefix}:{user_id}:{marketplace}:{day_key}"

    def get_recent(self, user_id, marketplace, day_key) -> RecentTelemetry:
        market = parse_marketplace(marketplace).value
        raw = self.client.hgetall(self._key(user_id, market, day_key)) or {}
        values: Dict[str, object] = {}
        for field, value in raw.items():
            name = _decode(field)
            text = _decode(value)
            if name == "cooldown_until":
                values["cooldown_until"] = datetime.fromisoformat(text) if text else None
            elif name in _REDIS_TO_RECENT:
                attr = _REDIS_TO_RECENT[name]
                values[attr] = int(float(text)) if attr in _INT_FIELDS else float(text)
        return RecentTelemetry(**values)

    def increment(self, user_id, marketplace, day_key, delta: TelemetryCounters) -> None:
        market = parse_marketplace(marketplace).value
        keys = (self._key(user_id, market, day_key), f"{self.prefix}:{user_id}:{day_key}")
        fields = to_hash_increments(delta)
        pipe = self.client.pipeline(transaction=True)
        for key in keys:
            for field, amount in fields.items():
                if amount:
                    pipe.hincrbyfloat(key, field, amount)
            pipe.expire(key, self.ttl_seconds)
        pipe.execute()

    def set_cooldown(self, user_id, marketplace, day_key, until: datetime) -> None:
        market = parse_marketplace(marketplace).value
        key = self._key(user_id, market, day_key)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(key, "cooldown_until", _utc(until).isoformat())
        pipe.expire(key, self.ttl_seconds)
        pipe.execute()

    def _user_marketplace_keys(self, user_id: str, day_key: Optional[str] = None):
        pattern = f"{self.prefix}:{user_id}:*:{day_key or '*'}"
        for key in self.client.scan_iter(match=pattern):
            name = _decode(key)
            # Skip the per-user rollup ({prefix}:{user}:{day})
            if name.count(":") - self.prefix.count(":") == 3:
                yield name

    def set_cooldown_for_user(self, user_id: str, until: datetime) -> int:
        keys = list(self._user_marketplace_keys(user_id))
        if not keys:
            return 0
        pipe = self.client.pipeline(transaction=True)
        for key in keys:
            pipe.hset(key, "cooldown_until", _utc(until).isoformat())
        pipe.execute()
        return len(keys)

    def reset_day(self, user_id: str, day_key: str, now: datetime) -> int:
        keys = list(self._user_marketplace_keys(user_id, day_key))
        zeros = {field: 0 for field in _REDIS_TO_RECENT}
        pipe = self.client.pipeline(transaction=True)
        for key in keys:
            pipe.hset(key, mapping=zeros)
        pipe.delete(f"{self.prefix}:{user_id}:{day_key}")
        pipe.execute()
        return len(keys)


def get_telemetry_store(kind: Optional[str] = None) -> TelemetryStore:
    """
    Build the store selected by TELEMETRY_STORE (memory | sql | redis).

    No silent fallback: losing counters would let spend go unmetered.
    """
    selected = (kind or settings.TELEMETRY_STORE or "memory").lower()
    if selected == "memory":
        return InMemoryTelemetryStore()
    if selected == "sql":
        return SqlTelemetryStore()
    if selected == "redis":
        return RedisTelemetryStore.from_url()
    raise ValueError(f"Unsupported TELEMETRY_STORE: {selected}")
