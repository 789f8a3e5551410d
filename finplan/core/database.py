"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Table definitions (SQLAlchemy Core) for subscriptions, history,
  quota-bounded resources and quota locks
- Test database support
"""
from typing import Optional
from contextlib import contextmanager, nullcontext
from sqlalchemy import (
    create_engine,
    event,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Index,
    ForeignKey,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
import os

from finplan.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # seconds a writer waits for the database lock

# Global engine and session factory
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


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    """Make every SQLite transaction start with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, which lets two writers both
    read before either locks. BEGIN IMMEDIATE takes the write lock up front,
    so concurrent transactions serialize instead of failing with
    "database is locked".
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> Engine:
    """Create an engine for `url` with the pooling and locking policy used here."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


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

    _engine = build_engine(url)

    # Create session factory
    _SessionLocal = sessionmaker(
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


def session_or_scope(session: Optional[Session], session_scope=None):
    """Reuse the caller's session (same transaction) or open a new scope."""
    if session is not None:
        return nullcontext(session)
    return (session_scope or get_db_session)()


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.

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


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


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
    except Exception:
        return False


# Subscriptions. Rows are never deleted; terminal statuses keep history.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_tier', String(20), nullable=False),
    Column('billing_period', String(20), nullable=False),
    Column('status', String(30), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('pending_tier', String(20), nullable=True),
    Column('payment_method_token', String(255), nullable=True),
    Column('last_payment_reference', String(255), nullable=True),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    # Optimistic concurrency counter; every UPDATE must match and bump it
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscriptions_user_id', 'user_id'),
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
    # At most one non-terminal subscription per user
    Index(
        'uq_subscriptions_user_live',
        'user_id',
        unique=True,
        sqlite_where=text("status IN ('TRIALING', 'ACTIVE', 'PENDING_CANCELLATION')"),
        postgresql_where=text("status IN ('TRIALING', 'ACTIVE', 'PENDING_CANCELLATION')"),
    ),
)

# Subscription history (append-only)
subscription_history = Table(
    'subscription_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), ForeignKey('subscriptions.id'), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('from_tier', String(20), nullable=True),
    Column('to_tier', String(20), nullable=False),
    Column('action', String(20), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscription_history_user_occurred', 'user_id', 'occurred_at'),
)

# Quota-bounded resources owned by users (wallets, accounts, ...)
owned_resources = Table(
    'owned_resources',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('kind', String(30), nullable=False),
    Column('name', String(200), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    # Usage counter query: live rows by (user_id, kind)
    Index('idx_owned_resources_user_kind', 'user_id', 'kind', 'deleted_at'),
)

# One row per (user, kind); locked for the check-then-insert sequence
quota_locks = Table(
    'quota_locks',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('kind', String(30), primary_key=True),
    Column('version', Integer, nullable=False, server_default='0'),
)
