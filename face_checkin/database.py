"""
Database Connection and Session Management

This module handles database connectivity using SQLAlchemy async engines.
PostgreSQL (asyncpg) in production; SQLite (aiosqlite) works for development
and tests.
"""
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
import logging

from face_checkin.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW

logger = logging.getLogger(__name__)

# Base class for ORM models
Base = declarative_base()


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """Create an async engine, with pooling suited to the backend."""
    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        url,
        echo=False,  # Set to True for SQL debugging
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,  # Enable connection health checks
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine
engine = build_engine(DATABASE_URL)

# Session factory
async_session_maker = build_session_maker(engine)


async def init_db(bind: AsyncEngine = None):
    """Verify connectivity and create missing tables."""
    bind = bind or engine
    # Register ORM models on Base.metadata
    from face_checkin import models  # noqa: F401

    try:
        async with bind.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise


async def close_db(bind: AsyncEngine = None):
    """Close database connection pool."""
    await (bind or engine).dispose()
    logger.info("Database connection pool closed")
