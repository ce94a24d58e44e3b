# scrapegate/conftest.py
from datetime import datetime, timezone

import pytest

from scrapegate.core.config import settings
from scrapegate.core.metrics import METRICS


@pytest.fixture
def fixed_now():
    """A fixed, timezone-aware clock reading (mid-day UTC, away from midnight)."""
    return datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sqlite_db():
    """
    Fresh in-memory SQLite database with every table created.

    The engine is process-global; it is disposed after the test so the next
    test starts from an empty database.
    """
    from scrapegate.core.database import create_all_tables, dispose_engine, init_engine

    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def memory_store():
    from scrapegate.features.telemetry.store import InMemoryTelemetryStore

    return InMemoryTelemetryStore()


@pytest.fixture
def memory_sink():
    from scrapegate.features.enforcement.audit import InMemoryAuditSink

    return InMemoryAuditSink()


@pytest.fixture
def override_settings(monkeypatch):
    """Set attributes on the shared settings object for the duration of a test."""

    def _override(**values):
        for key, value in values.items():
            monkeypatch.setattr(settings, key, value)

    return _override


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global counters; every test starts from zero."""
    METRICS.reset()
    yield
    METRICS.reset()
