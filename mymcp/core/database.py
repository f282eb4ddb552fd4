"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite, in-memory or file)
- Table definitions for the control plane
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, select

from mymcp.core.config import settings


logger = logging.getLogger("mymcp")

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


def _build_engine(url: str):
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            # One shared connection, otherwise every checkout sees an empty database
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, connect_args={**connect_args, "timeout": 30})

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

    _engine = _build_engine(url)

    # Create session factory
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
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users (identity provider subject -> local user)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(36), primary_key=True),
    Column('external_id', String(255), nullable=False),
    Column('email', String(320), nullable=False),
    Column('first_name', String(200), nullable=True),
    Column('last_name', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('external_id', name='uq_app_users_external_id'),
    Index('idx_users_created_at', 'created_at'),
)

# Plan catalog rows: one per (tier, billing cycle)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('tier', String(20), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('tier', 'billing_cycle', name='uq_plans_tier_cycle'),
)

# Subscriptions (history per user, soft lifecycle via status/end_date)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('subscription_id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('app_users.user_id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('next_billing_date', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Active subscription lookup: (user_id, status, created_at)
    Index('idx_subscriptions_user_status_created', 'user_id', 'status', 'created_at'),
)

# Monthly usage counters; the hot row for billable actions
user_usage = Table(
    'user_usage',
    metadata,
    Column('usage_id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('app_users.user_id'), nullable=False),
    Column('subscription_id', String(36), ForeignKey('subscriptions.subscription_id'), nullable=False),
    Column('year', Integer, nullable=False),
    Column('month', Integer, nullable=False),
    Column('request_count', Integer, nullable=False, server_default='0'),
    Column('last_updated', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'year', 'month', name='uq_user_usage_user_month'),
)

# Billable request log (audit trail for usage counters)
request_logs = Table(
    'request_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(36), nullable=False, index=True),
    Column('usage_id', String(36), ForeignKey('user_usage.usage_id'), nullable=False),
    Column('server_instance_id', String(36), nullable=True),
    Column('endpoint', String(255), nullable=False),
    Column('method', String(10), nullable=False),
    Column('response_code', Integer, nullable=False),
    Column('response_time_ms', Integer, nullable=False, server_default='0'),
    Column('weight', Integer, nullable=False, server_default='1'),
    Column('request_timestamp', DateTime(timezone=True), nullable=False),
    Index('idx_request_logs_usage', 'usage_id'),
)

# MCP server templates (reference data, natural key name+version)
mcp_server_templates = Table(
    'mcp_server_templates',
    metadata,
    Column('template_id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('version', String(50), nullable=False),
    Column('description', Text, nullable=True),
    Column('category', String(100), nullable=False),
    Column('documentation_url', Text, nullable=True),
    Column('repository_url', Text, nullable=True),
    Column('is_official', Boolean, nullable=False, server_default='0'),
    Column('capabilities', JSON, nullable=False),
    Column('default_configuration', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('name', 'version', name='uq_mcp_server_templates_name_version'),
)

# Container specs (reference data, natural key name)
container_specs = Table(
    'container_specs',
    metadata,
    Column('spec_id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('image_name', String(255), nullable=False),
    Column('image_tag', String(128), nullable=False),
    Column('cpu_limit', Integer, nullable=False),  # milliCPU
    Column('memory_limit', Integer, nullable=False),  # MB
    Column('port', Integer, nullable=False),
    Column('environment', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('name', name='uq_container_specs_name'),
)

# Provisioned server instances
server_instances = Table(
    'server_instances',
    metadata,
    Column('server_id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('app_users.user_id'), nullable=False),
    Column('name', String(128), nullable=False),
    Column('description', Text, nullable=True),
    Column('template_id', String(36), ForeignKey('mcp_server_templates.template_id'), nullable=False),
    Column('container_spec_id', String(36), ForeignKey('container_specs.spec_id'), nullable=False),
    Column('status', String(20), nullable=False),
    Column('container_instance_id', String(255), nullable=True),
    Column('idempotency_key', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('last_started_at', DateTime(timezone=True), nullable=True),
    Column('last_stopped_at', DateTime(timezone=True), nullable=True),
    # Composite index for list pattern: (user_id, created_at)
    Index('idx_server_instances_user_created', 'user_id', 'created_at'),
    # Retried creates with the same key resolve to one row
    UniqueConstraint('user_id', 'idempotency_key', name='uq_server_instances_user_idempotency'),
)

# Deployment audit trail (outlives deleted instances, so no FK)
deployment_audits = Table(
    'deployment_audits',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('server_instance_id', String(36), nullable=False, index=True),
    Column('user_id', String(36), nullable=True, index=True),
    Column('action', String(50), nullable=False),
    Column('status', String(20), nullable=False),
    Column('error_message', Text, nullable=True),
    Column('details', JSON, nullable=True),
    Column('duration_ms', Integer, nullable=True),
    Column('request_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_deployment_audits_created_at', 'created_at'),
)
