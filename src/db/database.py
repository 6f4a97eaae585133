# src/db/database.py
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from core.config import settings
from utils.logger import setup_logger

logger = setup_logger("DATABASE")


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine; SQLite URLs skip the connection pool options"""
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.DEBUG)

    if settings.ENVIRONMENT == "testing":
        return create_async_engine(url, echo=settings.DEBUG, poolclass=NullPool)

    return create_async_engine(
        url,
        echo=settings.DEBUG,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        connect_args=(
            {
                "server_settings": {
                    "jit": "off",
                    "application_name": "dental_treatments",
                },
            }
            if "postgresql" in url
            else {}
        ),
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()

# Async session factory
AsyncSessionLocal = build_session_factory(engine)

# Base class for models
Base = declarative_base()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session, rolling back on error"""
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.error(f"Database session error: {exc}")
        raise
    finally:
        await session.close()


async def create_tables(bind: Optional[AsyncEngine] = None):
    """Create all tables"""
    # Register the mapped classes on Base.metadata
    import models  # noqa: F401

    try:
        async with (bind or engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise


async def disconnect_db(bind: Optional[AsyncEngine] = None):
    """Disconnect from database"""
    await (bind or engine).dispose()
