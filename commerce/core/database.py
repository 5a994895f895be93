"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy engine and session factory construction
- Connection pooling with sane defaults and caller-supplied timeouts
- Table definitions for subscriptions, history and monetization ledgers

Engines and session factories are built by the process entry point
(see commerce.main) and injected into the services that need them.
"""
import logging
from typing import Optional

from sqlalchemy import (
    create_engine,
    false,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func


logger = logging.getLogger("commerce.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

ONE_ACTIVE_PER_USER_INDEX = "uq_user_subscriptions_one_active"


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///") or ":memory:" in database_url or "mode=memory" in database_url


def create_db_engine(database_url: str, timeout_seconds: float = 5.0) -> Engine:
    """
    Build a SQLAlchemy engine for the given URL.

    Args:
        database_url: SQLAlchemy URL (postgresql://..., sqlite://...)
        timeout_seconds: Upper bound for acquiring a connection and, on
            Postgres, for any single statement.
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if database_url.startswith("sqlite"):
        sqlite_args = {"check_same_thread": False, "timeout": timeout_seconds}
        if _is_memory_sqlite(database_url):
            # In-memory SQLite needs a single shared connection
            return create_engine(database_url, poolclass=StaticPool, connect_args=sqlite_args, echo=False)
        return create_engine(database_url, connect_args=sqlite_args, echo=False)

    connect_args = {}
    if database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout_seconds * 1000)}"

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=timeout_seconds,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to the given engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Optional[Engine]) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Subscriptions (aggregate root, owned by the state manager)
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('tier_id', Integer, nullable=False),
    Column('status', String(20), nullable=False, index=True),  # active, canceled, expired, paused
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False, server_default=false()),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('provider', String(20), nullable=False),  # stripe, ios, android, manual
    Column('provider_subscription_id', String(255), nullable=True),
    Column('provider_customer_id', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column('updated_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Idempotency key for provider-originated writes
    UniqueConstraint('provider', 'provider_subscription_id', name='uq_user_subscriptions_provider_sub'),
    Index('idx_user_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_user_subscriptions_status_period_end', 'status', 'current_period_end'),
    # At most one active subscription per user, across processes
    Index(
        ONE_ACTIVE_PER_USER_INDEX,
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Append-only subscription history
subscription_history = Table(
    'subscription_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), ForeignKey('user_subscriptions.id'), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('action', String(40), nullable=False),
    Column('from_tier_id', Integer, nullable=True),
    Column('to_tier_id', Integer, nullable=True),
    Column('metadata_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index('idx_subscription_history_user_created', 'user_id', 'created_at'),
)

# Provider event ledger (webhook receipt log)
provider_events = Table(
    'provider_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(20), nullable=False),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw payload
    Column('processed', Boolean, nullable=False, default=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint('provider', 'event_id', name='uq_provider_events_provider_event'),
)

# Referral attributions (written by the acquisition tracker, read here)
referral_attributions = Table(
    'referral_attributions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('link_code', String(64), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index('idx_referral_attributions_user_created', 'user_id', 'created_at'),
)

# Creator affiliate links
affiliate_links = Table(
    'affiliate_links',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('link_code', String(64), nullable=False, unique=True),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Affiliate conversions (one per converted subscription)
affiliate_conversions = Table(
    'affiliate_conversions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('link_code', String(64), nullable=False),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('subscriber_id', String(100), nullable=False),
    Column('subscription_id', String(36), nullable=False, unique=True),
    Column('tier_id', Integer, nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Creator monthly revenue ledger (integer minor units)
creator_revenue = Table(
    'creator_revenue',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('creator_id', String(100), nullable=False),
    Column('month', Integer, nullable=False),
    Column('year', Integer, nullable=False),
    Column('affiliate_earnings', Integer, nullable=False, default=0),
    Column('total_earnings', Integer, nullable=False, default=0),
    Column('active_referrals', Integer, nullable=False, default=0),
    Column('updated_at', DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint('creator_id', 'month', 'year', name='uq_creator_revenue_month'),
)
