"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory or TEST_DATABASE_URL)
- Table definitions for accounts, the credit ledger, plans and usage
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean,
    JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, select, func, true, false,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
import logging
import os

from charachat.core.config import settings

logger = logging.getLogger("charachat.database")

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
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

    _engine = _build_engine(url)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine() -> Engine:
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


@contextmanager
def transactional(session: Session):
    """
    Commit everything executed inside the block as one unit, or nothing.

    Usage:
        with transactional(db):
            db.execute(insert(...))
            db.execute(update(...))
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Service functions commit their own units of work; anything left
    uncommitted when the request ends is rolled back by close().
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# One row per account holding credits; the row lock serializes ledger writes
credit_accounts = Table(
    'credit_accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('ledger_sequence', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Append-only credit ledger
credit_transactions = Table(
    'credit_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('account_id', String(100), ForeignKey('credit_accounts.account_id'), nullable=False),
    Column('sequence', Integer, nullable=False),
    Column('transaction_type', String(50), nullable=False),
    Column('amount_credits', Integer, nullable=False),
    Column('balance_after', Integer, nullable=False),
    Column('notes', Text, nullable=True),
    Column('related_usage_log_id', String(36), nullable=True),
    Column('related_plan_id', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Two writers that read the same ledger head cannot both commit
    UniqueConstraint('account_id', 'sequence', name='uq_credit_transactions_account_sequence'),
    Index('idx_credit_transactions_account_created', 'account_id', 'created_at'),
    Index('idx_credit_transactions_account_type', 'account_id', 'transaction_type'),
)

# Monthly balance snapshots
monthly_balances = Table(
    'monthly_balances',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('month_start', DateTime(timezone=True), nullable=False),
    Column('starting_balance', Integer, nullable=False),
    Column('ending_balance', Integer, nullable=True),
    Column('credits_granted', Integer, nullable=False, server_default='0'),
    Column('credits_spent', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('account_id', 'month_start', name='uq_monthly_balances_account_month'),
)

# Reward claims: at most one per (account, kind, UTC day)
reward_claims = Table(
    'reward_claims',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('claim_kind', String(50), nullable=False),
    Column('claim_date', Date, nullable=False),
    Column('transaction_id', String(36), ForeignKey('credit_transactions.id'), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('account_id', 'claim_kind', 'claim_date', name='uq_reward_claims_account_kind_date'),
)

# Plan catalog (seeded reference data)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('tier', String(20), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('price_monthly', Numeric(10, 2), nullable=False, server_default='0'),
    Column('credits_per_month', Integer, nullable=False),
    Column('description', Text, nullable=True),
    Column('payment_provider', String(20), nullable=True),  # STRIPE | PAYPAL | NULL (free)
    Column('stripe_price_id', String(100), nullable=True, unique=True),
    Column('paypal_plan_id', String(100), nullable=True, unique=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscription records (history; one ACTIVE row per account at a time)
user_plans = Table(
    'user_plans',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('account_id', String(100), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False),
    Column('payment_provider', String(20), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('last_credits_granted_at', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('paypal_subscription_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_user_plans_account_status', 'account_id', 'status'),
)

# Metered service usage awaiting (or done with) credit deduction
usage_logs = Table(
    'usage_logs',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('account_id', String(100), nullable=False),
    Column('service_type', String(50), nullable=False),
    Column('conversation_id', String(100), nullable=True),
    Column('provider_name', String(100), nullable=True),
    Column('model_name', String(200), nullable=True),
    Column('input_tokens', Integer, nullable=True),
    Column('output_tokens', Integer, nullable=True),
    Column('characters_processed', Integer, nullable=True),
    Column('images_processed', Integer, nullable=True),
    Column('additional_metadata', JSON, nullable=True),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('credits_consumed', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_usage_logs_processed_created', 'processed', 'created_at'),
    Index('idx_usage_logs_account_created', 'account_id', 'created_at'),
)

# Credits charged per unit of each metered service
service_credit_costs = Table(
    'service_credit_costs',
    metadata,
    Column('service_type', String(50), primary_key=True),
    Column('credits_per_unit', Numeric(10, 4), nullable=False),
    Column('unit_description', Text, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Payment webhook events (idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(20), nullable=False),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('provider', 'event_id', name='uq_billing_events_provider_event'),
)
