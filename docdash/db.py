# docdash/db.py
import logging

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from docdash.config import settings
from docdash.models import Base

logger = logging.getLogger(__name__)

# Engine: tune pool size via env/config (SQLAlchemy will pass through to asyncpg)
engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    pool_pre_ping=True,
)

# Use async_sessionmaker (SQLAlchemy 1.4+/2.0 style for async)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def make_sessionmaker(database_url: str, **engine_kwargs) -> async_sessionmaker:
    """
    Separate engine + sessionmaker, for code that runs outside the web process
    event loop (Celery tasks call asyncio.run per task, and pooled asyncpg
    connections cannot cross loops).
    """
    task_engine = create_async_engine(database_url, echo=False, future=True, **engine_kwargs)
    return async_sessionmaker(task_engine, expire_on_commit=False, class_=AsyncSession)


async def init_models() -> None:
    """
    Development helper that creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def close_engine() -> None:
    """Call this on app shutdown to cleanly dispose connection pool."""
    await engine.dispose()
    logger.info("Database engine disposed")

