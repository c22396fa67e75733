"""
Persistence for the subscription engine.

SQLAlchemy Core tables on one MetaData, a lazily created engine, and
get_db_session(): one transaction per `with` block, committed on exit and
rolled back on any exception. Works against PostgreSQL in production and a
SQLite file in tests.
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean,
    JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from mcqprep.core.config import settings

logger = logging.getLogger("mcqprep")

metadata = MetaData()

# Server databases only; SQLite uses the default single-file pool
SERVER_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL from the environment wins over settings.DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module engine and session factory to a database URL."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(url, **SERVER_POOL_OPTIONS)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Transaction scope for Core statements.

        with get_db_session() as session:
            session.execute(insert(billing_events).values(...))
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """Create missing tables; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    metadata.drop_all(bind=get_engine())


def reset_database():
    """Drop and recreate every table. Tests only."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
    return True


# Profiles: identity-owned; the engine writes only the derived access flag,
# the Stripe customer id and the trial marker.
profiles = Table(
    'profiles',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('first_name', String(100), nullable=True),
    Column('last_name', String(100), nullable=True),
    Column('has_active_subscription', Boolean, nullable=False, server_default='0'),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('trial_taken', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Tier catalog (admin-owned, read-only to the engine)
subscription_tiers = Table(
    'subscription_tiers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(100), nullable=False, unique=True),
    Column('price', Numeric(10, 2), nullable=False),
    Column('currency', String(3), nullable=False, server_default='USD'),
    Column('duration_in_months', Integer, nullable=False),
    Column('stripe_price_id', String(100), nullable=True, unique=True),
    Column('paypal_plan_id', String(100), nullable=True, unique=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscription ledger: one row per subscription instance, never deleted
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('profiles.id'), nullable=False),
    Column('tier_id', Integer, ForeignKey('subscription_tiers.id'), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False),
    Column('provider_kind', String(20), nullable=False, server_default='none'),
    Column('provider_subscription_id', String(255), nullable=True),
    Column('provider_customer_id', String(255), nullable=True),
    Column('provider_status', String(50), nullable=True),
    Column('source', String(20), nullable=False, server_default='purchase'),
    # ClosureReason value once the row is inactive
    Column('closed_reason', String(20), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint("status IN ('active', 'inactive')", name='ck_user_subscriptions_status'),
    CheckConstraint("provider_kind IN ('none', 'stripe', 'paypal')", name='ck_user_subscriptions_provider'),
    UniqueConstraint('provider_kind', 'provider_subscription_id', name='uq_user_subscriptions_provider_sub'),
    Index('idx_user_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_user_subscriptions_end_date', 'end_date'),
    # At most one active row per user
    Index(
        'uq_user_subscriptions_one_active',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Reward ledger: one logical row per user
reward_ledger = Table(
    'reward_ledger',
    metadata,
    Column('user_id', String(100), ForeignKey('profiles.id'), primary_key=True),
    Column('total_points', Integer, nullable=False, server_default='0'),
    Column('last_award_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Question of the day
daily_questions = Table(
    'daily_questions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('mcq_id', String(100), nullable=False),
    Column('question_text', Text, nullable=False),
    Column('options', JSON, nullable=False),
    Column('correct_option', String(10), nullable=False),
    Column('scheduled_for', Date, nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# One submission per identity per daily question
daily_submissions = Table(
    'daily_submissions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('daily_question_id', Integer, ForeignKey('daily_questions.id'), nullable=False),
    Column('user_id', String(100), ForeignKey('profiles.id'), nullable=True),
    Column('guest_name', String(200), nullable=True),
    Column('guest_email', String(255), nullable=True),
    Column('identity_key', String(300), nullable=False),
    Column('selected_option', String(10), nullable=False),
    Column('is_correct', Boolean, nullable=False),
    Column('points_awarded', Integer, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('daily_question_id', 'identity_key', name='uq_daily_submissions_identity'),
    Index('idx_daily_submissions_user', 'user_id'),
)

# Provider webhook log (idempotency + audit)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_kind', String(20), nullable=False),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('user_id', String(100), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_kind', 'event_id', name='uq_billing_events_provider_event'),
    Index('idx_billing_events_processed', 'processed'),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Payment taken, no entitlement recorded
reconciliation_alerts = Table(
    'reconciliation_alerts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('provider_kind', String(20), nullable=False),
    Column('provider_subscription_id', String(255), nullable=True),
    Column('error', Text, nullable=False),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    Column('resolved_by', String(255), nullable=True),
    Column('resolution_note', Text, nullable=True),
    Index('idx_reconciliation_alerts_open', 'resolved_at'),
)

# Admin audit log
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('actor_id', String(255), nullable=True),
    Column('auth_mechanism', String(20), nullable=True),
    Column('action', String(100), nullable=False),
    Column('target_user_id', String(100), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_admin_audit_action', 'action'),
    Index('idx_admin_audit_user_id', 'target_user_id'),
    Index('idx_admin_audit_created_at', 'created_at'),
)
