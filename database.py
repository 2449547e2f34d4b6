"""
Ledger Store Engine and Sessions
================================

Engine and session factory for the settlement ledger. PostgreSQL in
production; in-memory SQLite (single shared connection) for tests and local runs.
Row locks are taken with SELECT ... FOR UPDATE where the dialect supports it.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # Local development and tests: one shared connection so in-memory databases
    # survive across sessions and threads
    engine = create_engine(
        Config.DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=Config.DATABASE_ECHO,
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    # PostgreSQL: conservative pool, row locks via SELECT ... FOR UPDATE
    engine = create_engine(
        Config.DATABASE_URL,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "trade_settlement_engine",
        },
    )

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables():
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=engine, checkfirst=True)

        existing_tables = inspect(engine).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def drop_tables():
    """Drop every ledger table (tests only)"""
    Base.metadata.drop_all(bind=engine)


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def get_db():
    """FastAPI dependency yielding a request-scoped session"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def test_connection():
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


# Deferred notifications are dispatched only after the ledger transaction commits
from services.notification_service import register_session_hooks  # noqa: E402

register_session_hooks(SessionLocal)
