"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with bounded timeouts (store calls never block indefinitely)
- Test database support (in-memory SQLite)
- Table definitions for the entitlement store, billing events and documents
"""
from typing import List, Optional
from contextlib import contextmanager
from sqlalchemy import inspect, create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, Boolean, Text, Index, CheckConstraint, UniqueConstraint, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from quizcast.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


LOCAL_SQLITE_URL = "sqlite:///./quizcast.db"


def get_database_url() -> Optional[str]:
    """
    Resolve the entitlement store URL.

    TEST_DATABASE_URL wins (tests only), then DATABASE_URL. Development without either
    falls back to a local SQLite file; production never does.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    if settings.ENV.lower() in {"dev", "development"}:
        return LOCAL_SQLITE_URL
    return None


def _engine_kwargs(url: str) -> dict:
    timeout = settings.STORE_TIMEOUT_SECONDS
    backend = make_url(url).get_backend_name()

    if backend == "sqlite":
        kwargs = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
        if make_url(url).database in (None, "", ":memory:"):
            # A single shared connection keeps the in-memory schema alive across sessions
            kwargs["poolclass"] = StaticPool
        return kwargs

    connect_args = {}
    if backend == "postgresql":
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": timeout,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }


def init_engine(database_url: Optional[str] = None):
    """
    (Re)build the engine and session factory, disposing any previous engine.

    Args:
        database_url: Optional override for the resolved store URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "No entitlement store configured: set DATABASE_URL (or TEST_DATABASE_URL in tests)"
        )

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

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


@contextmanager
def get_db_session():
    """One unit of work: commit on success, roll back on any error, always close."""
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
    """Create missing tables (existing ones are left alone)."""
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    metadata.drop_all(bind=get_engine())


def reset_database():
    """Empty store for tests: drop and recreate every table."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """True when a connection can run SELECT 1 within the store timeout."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database connection check failed: %s", e.__class__.__name__)
        return False
    return True


def missing_tables() -> List[str]:
    """Tables declared in metadata that the connected database does not have."""
    inspector = inspect(get_engine())
    return sorted(name for name in metadata.tables if not inspector.has_table(name))


# Entitlement store: one row per user
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('credits', Integer, nullable=False, server_default='0'),
    Column('last_reset_date', Date, nullable=True),
    Column('unlimited', Boolean, nullable=False, server_default=text('false')),
    Column('subscription_plan', String(20), nullable=False, server_default='none'),
    Column('valid_until', DateTime(timezone=True), nullable=True),
    Column('email', String(320), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('credits >= 0', name='ck_entitlements_credits_non_negative'),
    # Email is a fallback join key to payment-provider identities
    Index('idx_entitlements_email', 'email'),
)

# Billing events (webhook idempotency + failure follow-up)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('payload_json', Text, nullable=True),  # verified payload, kept for replay
    Column('user_id', String(128), nullable=True, index=True),
    Column('processed', Boolean, nullable=False, server_default=text('false')),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)

# Admin audit log
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('action', String(100), nullable=False),  # "grant_unlimited", "replay_webhook", ...
    Column('target_user_id', String(128), nullable=True, index=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
    Index('idx_billing_admin_audit_action', 'action'),
)

# Uploaded documents, addressed by explicit id and owned by one user
documents = Table(
    'documents',
    metadata,
    Column('document_id', String(32), primary_key=True),
    Column('user_id', String(128), nullable=False),
    Column('filename', String(255), nullable=True),
    Column('text', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_documents_user_created', 'user_id', 'created_at'),
)
