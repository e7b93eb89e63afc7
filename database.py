"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the beat marketplace order core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import Config
from models import Base
from utils.order_errors import MarketplaceError, StoreWriteFailure, ConcurrentUpdateError

logger = logging.getLogger(__name__)


def _async_database_url(url: str) -> str:
    # asyncpg needs an explicit driver name and uses 'ssl' instead of 'sslmode'
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    if url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql+asyncpg://'):
        url = url.replace('sslmode=', 'ssl=')
    return url


def build_async_engine(url: Optional[str] = None, **kwargs):
    """Create an async engine with pool settings suited to the driver"""
    async_url = _async_database_url(url or Config.DATABASE_URL)
    options = {"echo": Config.DATABASE_ECHO, "pool_pre_ping": True}
    if async_url.startswith('postgresql+asyncpg://'):
        options.update(
            pool_size=7,
            max_overflow=15,
            pool_recycle=3600,
            pool_timeout=30,
        )
    options.update(kwargs)
    return create_async_engine(async_url, **options)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = build_async_engine()
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """
    Async context manager for database sessions

    Commits on success, rolls back on any error. Domain errors propagate unchanged;
    version conflicts surface as ConcurrentUpdateError and any other SQLAlchemy
    failure as StoreWriteFailure.
    """
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except MarketplaceError:
        await session.rollback()
        raise
    except StaleDataError as e:
        logger.warning(f"⚠️ STORE_VERSION_CONFLICT: {e}")
        await session.rollback()
        raise ConcurrentUpdateError("document", "unknown") from e
    except SQLAlchemyError as e:
        logger.error(f"❌ STORE_WRITE_FAILURE: {e}")
        await session.rollback()
        raise StoreWriteFailure(f"Store write failed: {e.__class__.__name__}") from e
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine=None):
    """Create all marketplace tables"""
    target = engine or async_engine
    try:
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


async def dispose_engine(engine=None):
    await (engine or async_engine).dispose()
