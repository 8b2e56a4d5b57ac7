"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for user records and billing bookkeeping
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, false
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from nutritrack.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory (default wiring for the app and scripts)
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine for `url`.

    SQLite gets a single shared connection so in-memory databases survive
    across sessions and threads (TestClient runs handlers in a worker thread).
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the global SQLAlchemy engine.

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

    _engine = build_engine(url)
    _SessionLocal = make_session_factory(_engine)

    return _engine


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


def new_session() -> Session:
    """Open a session on the global engine (lazy init)."""
    return get_session_factory()()


def create_all_tables(engine: Optional[Engine] = None):
    """Create all tables (idempotent)."""
    metadata.create_all(engine or get_engine())


# User records: one row per authenticated user
users = Table(
    'users',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='inactive'),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('targets', JSON, nullable=False),
    # Compare-and-set token, bumped on every status write
    Column('revision', Integer, nullable=False, server_default='0'),
    # Provider `created` (epoch seconds) of the last webhook event applied to status
    Column('status_event_created', Integer, nullable=True),
    Column('last_reconciled_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_stripe_customer_id', 'stripe_customer_id'),
    Index('idx_users_subscription_status', 'subscription_status'),
)

# Secondary index: billing customer -> user, written when a customer is linked
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('stripe_customer_id', String(100), primary_key=True),
    Column('user_id', String(128), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_customers_user_id', 'user_id'),
)

# Billing events (webhook idempotency ledger)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(50), nullable=True),  # applied, ignored, stale, user_not_found
    Column('user_id', String(128), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)

# Job runs (batch reconciliation)
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_job_name', 'job_name'),
)
