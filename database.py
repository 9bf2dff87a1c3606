"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the RippleBids settlement core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def to_async_database_url(database_url: str) -> str:
    """Convert a sync PostgreSQL URL into its asyncpg form"""
    async_database_url = database_url
    if async_database_url.startswith('postgres://'):
        async_database_url = async_database_url.replace('postgres://', 'postgresql://', 1)
    async_database_url = async_database_url.replace('postgresql://', 'postgresql+asyncpg://')
    # asyncpg uses 'ssl' instead of 'sslmode' parameter
    async_database_url = async_database_url.replace('sslmode=require', 'ssl=require')
    async_database_url = async_database_url.replace('sslmode=prefer', 'ssl=prefer')
    async_database_url = async_database_url.replace('sslmode=disable', 'ssl=disable')
    return async_database_url


def build_async_engine(database_url: str) -> AsyncEngine:
    """Create the async engine; pool settings only apply to PostgreSQL"""
    async_database_url = to_async_database_url(database_url)
    if async_database_url.startswith('postgresql+asyncpg://'):
        return create_async_engine(
            async_database_url,
            pool_size=7,
            max_overflow=15,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=False,
            connect_args={
                "server_settings": {
                    "application_name": "ripplebids_settlement",
                },
                "timeout": 10,
                "command_timeout": 30,
            }
        )
    return create_async_engine(async_database_url, echo=False)


async_engine: AsyncEngine = build_async_engine(Config.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False  # Background jobs read attributes after commit
)


def configure_database(database_url: str) -> AsyncEngine:
    """Rebind the engine and session factory (alternate databases, tests)"""
    global async_engine
    async_engine = build_async_engine(database_url)
    AsyncSessionLocal.configure(bind=async_engine)
    return async_engine


async def create_tables(engine: Optional[AsyncEngine] = None):
    """Create all database tables if they don't exist"""
    engine = engine or async_engine
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables created/verified")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise


async def drop_tables(engine: Optional[AsyncEngine] = None):
    """Drop all tables (tests only)"""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def async_managed_session():
    """Async context manager for database sessions"""
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


async def check_connection() -> bool:
    """Test database connection"""
    try:
        async with async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False
