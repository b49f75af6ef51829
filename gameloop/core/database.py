"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, practice activity and challenge assignments
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, select, MetaData, Table, Column, Integer, String, DateTime, Date, Float, Text, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from gameloop.core.config import settings


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
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str):
    """Create an engine; SQLite URLs get a single shared connection."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
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

    _engine = build_engine(url)

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
def session_scope(session_factory=None):
    """
    Context manager for database sessions.

    Usage:
        with session_scope() as session:
            session.execute(...)
    """
    SessionLocal = session_factory or get_session_factory()
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
            conn.execute(select(1))
        return True
    except Exception:
        return False


# Users with their aggregate gamification counters
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('total_points', Integer, nullable=False, server_default='0'),
    # When total_points last changed; earliest wins a tie on the leaderboard
    Column('points_updated_at', DateTime(timezone=True), nullable=True),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('badges_earned', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_status_points', 'status', 'total_points'),
)

# Per-topic progress (strength drives topic leaderboards and challenge selection)
topic_progress = Table(
    'topic_progress',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('topic_id', String(100), nullable=False, index=True),
    Column('strength_score', Float, nullable=False, server_default='0'),
    Column('questions_solved', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'topic_id', name='uq_topic_progress_user_topic'),
    Index('idx_topic_progress_topic_strength', 'topic_id', 'strength_score'),
)

# Practice activity; a user is "active" when they practiced recently
practice_logs = Table(
    'practice_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('topic_id', String(100), nullable=False),
    Column('difficulty', String(20), nullable=False),
    Column('solved', Integer, nullable=False, server_default='0'),
    Column('practiced_at', DateTime(timezone=True), nullable=False),
    Index('idx_practice_logs_practiced_at', 'practiced_at'),
)

# Daily challenge assignments; one row per (user_id, date)
challenge_assignments = Table(
    'challenge_assignments',
    metadata,
    Column('assignment_id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('date', Date, nullable=False),
    Column('definition_id', String(100), nullable=False),
    Column('topic_id', String(100), nullable=False),
    Column('difficulty', String(20), nullable=False),
    Column('target_count', Integer, nullable=False),
    Column('progress', Integer, nullable=False, server_default='0'),
    Column('reward_points', Integer, nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('user_id', 'date', name='uq_challenge_assignments_user_date'),
    # History reads: (user_id, date DESC)
    Index('idx_challenge_assignments_user_date', 'user_id', 'date'),
    Index('idx_challenge_assignments_status_date', 'status', 'date'),
)
