"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the donation ledger.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Database engine with connection pooling
if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _build_engine(database_url: str):
    """PostgreSQL gets a bounded QueuePool; SQLite (tests, local runs) a single shared connection"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=Config.DATABASE_ECHO,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "screening_ledger",  # For monitoring in pg_stat_activity
        }
    )


engine = _build_engine(Config.DATABASE_URL)

# Session factory; expire_on_commit=False so committed results stay readable by callers
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables():
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    Base.metadata.create_all(bind=engine, checkfirst=True)

    existing_tables = inspect(engine).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    return True


def drop_tables():
    """Drop every ledger table (tests and local resets only)"""
    Base.metadata.drop_all(bind=engine)


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


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
