"""
Database configuration for the relational store.

Builds the SQLAlchemy engine and session factory from settings. PostgreSQL
deployments get a pooled engine; SQLite (local runs and tests) gets a
single shared connection.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from .config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy base class for models
Base = declarative_base()

SessionFactory = Callable[[], Session]


# ================================
# Engine Configuration
# ================================

def get_database_config(database_url: str) -> Dict[str, Any]:
    """
    Get engine keyword arguments for a database URL.

    Args:
        database_url: SQLAlchemy connection URL

    Returns:
        Dict: Keyword arguments for create_engine
    """
    if database_url.startswith("sqlite"):
        return {
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
            'echo': settings.log_level == "DEBUG",
        }

    return {
        'poolclass': QueuePool,
        'pool_size': settings.db_pool_size,
        'max_overflow': settings.db_max_overflow,
        'pool_timeout': settings.db_pool_timeout,
        'pool_recycle': settings.db_pool_recycle,
        'pool_pre_ping': True,
        'echo': settings.log_level == "DEBUG",
    }


def build_engine(database_url: str) -> Engine:
    """Create an engine configured for the given URL."""
    return create_engine(database_url, **get_database_config(database_url))


def build_session_factory(bind: Engine) -> sessionmaker:
    """Create a session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False
    )


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


# ================================
# Session Helpers
# ================================

@contextmanager
def session_scope(session_factory: SessionFactory = SessionLocal) -> Iterator[Session]:
    """
    Context manager for a unit of work with automatic commit or rollback.

    Args:
        session_factory: Factory producing sessions

    Example:
        >>> with session_scope() as db:
        ...     db.add(memory)
        ...     # Automatically commits or rolls back
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ================================
# Database Initialization
# ================================

def init_database(bind: Engine = None) -> bool:
    """
    Initialize database by creating all tables.

    Args:
        bind: Engine to create tables on, defaults to the configured engine

    Returns:
        bool: True if successful, False otherwise
    """
    try:
        # Import models to ensure they're registered
        from memory_mesh.models import memory  # noqa: F401

        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def check_database_connection(bind: Engine = None) -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection is healthy, False otherwise
    """
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1")).fetchone()
        return True

    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def close_all_connections() -> None:
    """Close all database connections (for graceful shutdown)."""
    try:
        engine.dispose()
        logger.info("All database connections closed")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")
