"""
Injectable configuration providers.

A provider wraps a loader returning ``(config, source)`` and caches the
result for a TTL. Loader exceptions are logged and resolved to the
provider's fallback with source ``fallback``, so consumers that branch on
the source fail closed. ``refresh()`` forces a reload, ``invalidate()``
drops the cached entry.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Literal, Optional, Tuple, TypeVar

from scrapegate.core.config import settings
from scrapegate.core.metrics import config_fallback_total

logger = logging.getLogger(__name__)

ConfigSource = Literal["cache", "db", "fallback"]

T = TypeVar("T")

Loader = Callable[[], Tuple[T, ConfigSource]]


@dataclass(frozen=True)
class _Entry(Generic[T]):
    value: T
    source: ConfigSource
    loaded_at: float


class ConfigProvider(Generic[T]):
    """TTL-cached, fail-closed configuration source."""

    def __init__(
        self,
        name: str,
        loader: Callable[[], Tuple[T, ConfigSource]],
        fallback: T,
        *,
        ttl_seconds: Optional[float] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.loader = loader
        self.fallback = fallback
        self.ttl_seconds = settings.CONFIG_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.time_fn = time_fn
        self._entry: Optional[_Entry[T]] = None
        self._lock = threading.Lock()

    def _load(self) -> Tuple[T, ConfigSource]:
        try:
            value, source = self.loader()
        except Exception:
            logger.error(f"[config] {self.name} load failed, failing closed", exc_info=True)
            value, source = self.fallback, "fallback"
        if source == "fallback":
            config_fallback_total.inc({"provider": self.name})
        return value, source

    def get(self) -> Tuple[T, ConfigSource]:
        """Return ``(config, source)``; serves the cache while fresh."""
        now = self.time_fn()
        with self._lock:
            entry = self._entry
            if entry is not None and now - entry.loaded_at < self.ttl_seconds:
                # A cached fallback stays a fallback
                return entry.value, ("fallback" if entry.source == "fallback" else "cache")

        value, source = self._load()
        with self._lock:
            self._entry = _Entry(value=value, source=source, loaded_at=now)
        return value, source

    def refresh(self) -> Tuple[T, ConfigSource]:
        self.invalidate()
        return self.get()

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None


K = TypeVar("K", bound=Hashable)


class KeyedConfigProvider(Generic[K, T]):
    """One ConfigProvider per key (marketplace rate rows, canary targets)."""

    def __init__(
        self,
        name: str,
        loader: Callable[[K], Tuple[T, ConfigSource]],
        fallback: T,
        *,
        ttl_seconds: Optional[float] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.loader = loader
        self.fallback = fallback
        self.ttl_seconds = ttl_seconds
        self.time_fn = time_fn
        self._providers: Dict[K, ConfigProvider[T]] = {}
        self._lock = threading.Lock()

    def _provider_for(self, key: K) -> ConfigProvider[T]:
        with self._lock:
            if key not in self._providers:
                self._providers[key] = ConfigProvider(
                    f"{self.name}:{key}",
                    lambda: self.loader(key),
                    self.fallback,
                    ttl_seconds=self.ttl_seconds,
                    time_fn=self.time_fn,
                )
            return self._providers[key]

    def get(self, key: K) -> Tuple[T, ConfigSource]:
        return self._provider_for(key).get()

    def refresh(self, key: K) -> Tuple[T, ConfigSource]:
        return self._provider_for(key).refresh()

    def invalidate(self, key: Optional[K] = None) -> None:
        with self._lock:
            if key is None:
                self._providers.clear()
            else:
                self._providers.pop(key, None)


def static_provider(name: str, value: T, source: ConfigSource = "db") -> ConfigProvider[T]:
    """Provider over a fixed value (tests, local runs)."""
    return ConfigProvider(name, lambda: (value, source), value, ttl_seconds=0.0)
