"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory via StaticPool)
- Table definitions for telemetry counters, enforcement audit and the
  fail-closed configuration tables (kill switches, gates, canary, rate limits)
"""
import logging
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Float, JSON, Index, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from scrapegate.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the cached engine (tests swap databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Per (user, marketplace, day) cost telemetry counters
usage_telemetry = Table(
    'usage_telemetry',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('marketplace', String(32), nullable=False),
    Column('day_key', String(10), nullable=False),  # YYYY-MM-DD
    Column('full_runs', Integer, nullable=False, server_default='0'),
    Column('partial_runs', Integer, nullable=False, server_default='0'),
    Column('signal_checks', Integer, nullable=False, server_default='0'),
    Column('proxy_gb_estimated', Float, nullable=False, server_default='0'),
    Column('cost_usd_estimated', Float, nullable=False, server_default='0'),
    Column('last_reset_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('cooldown_until', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'marketplace', 'day_key', name='uq_usage_telemetry_user_market_day'),
    Index('idx_usage_telemetry_user_id', 'user_id'),
    Index('idx_usage_telemetry_day_key', 'day_key'),
)

# Enforcement audit trail (one row per decision acted upon)
enforcement_events = Table(
    'enforcement_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('marketplace', String(32), nullable=False),
    Column('tier', String(32), nullable=False),
    Column('decision', String(16), nullable=False),  # ALLOW | DOWNGRADE | DENY | THROTTLE | BLOCK
    Column('mode', String(16), nullable=False),
    Column('reason_code', String(64), nullable=False),
    Column('job_id', String(64), nullable=True),
    Column('audit', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_enforcement_events_user_id', 'user_id'),
    Index('idx_enforcement_events_marketplace', 'marketplace'),
    Index('idx_enforcement_events_created_at', 'created_at'),
)

# Kill switches (single 'default' row; missing row = fail closed)
scraper_kill_switches = Table(
    'scraper_kill_switches',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('scrapers_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('ebay_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('facebook_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('vinted_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('gumtree_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('amazon_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('craigslist_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('realtime_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('scheduled_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('manual_enabled', Boolean, nullable=False, server_default=text('1')),
    Column('demo_mode_enabled', Boolean, nullable=False, server_default=text('0')),
    Column('demo_mode_expires_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Observability gate thresholds
observability_gates = Table(
    'observability_gates',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('enabled', Boolean, nullable=False, server_default=text('1')),
    Column('window_minutes', Integer, nullable=False, server_default='15'),
    Column('max_error_rate_percent', Integer, nullable=False, server_default='20'),
    Column('max_median_ms', Integer, nullable=False, server_default='15000'),
    Column('max_p95_ms', Integer, nullable=False, server_default='30000'),
    Column('max_queue_depth', Integer, nullable=False, server_default='200'),
    Column('max_worker_crashes', Integer, nullable=False, server_default='5'),
    Column('max_jobs_per_minute', Integer, nullable=False, server_default='120'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Canary ramp per marketplace
canary_ramps = Table(
    'canary_ramps',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('ramp_percent', Integer, nullable=False, server_default='0'),
    Column('previous_percent', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Marketplace rate shaping
marketplace_rate_limits = Table(
    'marketplace_rate_limits',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('enabled', Boolean, nullable=False, server_default=text('1')),
    Column('max_concurrency', Integer, nullable=False, server_default='5'),
    Column('jobs_per_minute', Integer, nullable=False, server_default='30'),
    Column('error_threshold', Integer, nullable=False, server_default='20'),
    Column('cooldown_seconds', Integer, nullable=False, server_default='300'),
    Column('cooldown_until', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_marketplace_rate_enabled', 'enabled'),
)
