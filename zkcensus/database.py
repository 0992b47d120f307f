"""
zk-census Database Configuration
Async SQLAlchemy setup for PostgreSQL (asyncpg) and SQLite (aiosqlite)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from typing import AsyncGenerator, Any, Dict
import logging

from zkcensus.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

# Convert postgres:// to postgresql+asyncpg:// for async driver
if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
elif DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)

logger.info(f"Database URL configured: {DATABASE_URL.split('@')[0]}@...")

engine_kwargs: Dict[str, Any] = {
    "echo": False,  # Set to True for SQL query logging
    "pool_pre_ping": True,
}
if not DATABASE_URL.startswith("sqlite"):
    engine_kwargs.update(
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_recycle=3600,
    )

engine = create_async_engine(DATABASE_URL, **engine_kwargs)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database session

    Usage in FastAPI:
        @app.get("/route")
        async def my_route(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise


async def init_db():
    """
    Initialize database - create all tables

    This should be called on application startup
    """
    try:
        async with engine.begin() as conn:
            # Import all models to ensure they're registered
            from zkcensus.models import Census, NullifierEntry  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified")
            logger.info(f"  Tables: {', '.join(Base.metadata.tables.keys())}")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def drop_all_tables():
    """
    Drop all tables (use with caution!)
    Only for testing/development
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            logger.warning("All database tables dropped")
    except Exception as e:
        logger.error(f"Failed to drop tables: {e}")
        raise


async def reset_db():
    """
    Reset database - drop and recreate all tables
    Only for testing/development
    """
    logger.warning("Resetting database...")
    await drop_all_tables()
    await init_db()
    logger.info("Database reset complete")


async def close_db():
    """Close database connections"""
    try:
        await engine.dispose()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database: {e}")


async def check_connection() -> bool:
    """
    Check database connection
    Returns True if connection is working
    """
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
