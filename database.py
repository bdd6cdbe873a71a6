"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the settlement engine.
The engine is built on first use so tooling and tests can point it at another
database with ``configure_database`` before any pipeline runs.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def to_async_database_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL for the asyncpg driver"""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    url = url.replace("sslmode=require", "ssl=require")
    url = url.replace("sslmode=prefer", "ssl=prefer")
    url = url.replace("sslmode=disable", "ssl=disable")
    return url


def configure_database(url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """
    Build the async engine and session factory.

    PostgreSQL gets a bounded connection pool; any other backend (SQLite in
    tests) takes the caller's engine arguments as-is.
    """
    global _async_engine, _session_factory

    url = url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    async_url = to_async_database_url(url)
    if async_url.startswith("postgresql+asyncpg://"):
        options = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
            "pool_timeout": 30,
            "connect_args": {
                "server_settings": {"application_name": "custodial_settlement_engine"},
                "timeout": 10,
                "command_timeout": 30,
            },
        }
        options.update(engine_kwargs)
    else:
        options = dict(engine_kwargs)

    _async_engine = create_async_engine(async_url, echo=False, **options)
    _session_factory = async_sessionmaker(
        _async_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # rows are read after commit in background jobs
    )
    logger.info(f"🔌 DATABASE_CONFIGURED: {_async_engine.dialect.name} engine ready")
    return _async_engine


def get_async_engine() -> AsyncEngine:
    if _async_engine is None:
        configure_database()
    return _async_engine


def AsyncSessionLocal() -> AsyncSession:
    """New session from the configured factory"""
    if _session_factory is None:
        configure_database()
    return _session_factory()


@asynccontextmanager
async def async_managed_session():
    """Async context manager for database sessions; commits on success, rolls back on error"""
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables() -> bool:
    """Create all database tables if they don't exist"""
    engine = get_async_engine()
    logger.info(f"🏗️ Creating database tables (if they don't exist): {len(Base.metadata.tables)} models")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
    return True


async def test_connection() -> bool:
    """Test database connection"""
    try:
        async with get_async_engine().connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine():
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _session_factory = None
