import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.config import Settings
from src.models.base import Base

logger = logging.getLogger(__name__)


def build_engine(settings: Settings, *, worker: bool = False) -> AsyncEngine:
    """Create the async engine.

    Celery tasks run each attempt in a fresh event loop, so worker engines
    do not pool connections across loops.
    """
    if worker or settings.database_url.startswith("sqlite"):
        return create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            poolclass=NullPool,
        )
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=5,
        max_overflow=0,  # Queue instead of exceeding the connection limit
        pool_pre_ping=True,  # Check connection health before use
        pool_recycle=300,  # Recycle connections after 5 minutes
        pool_timeout=30,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, max_retries: int = 5, retry_delay: float = 2) -> None:
    """Create tables, retrying connection failures with exponential backoff."""
    for attempt in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return  # Success
        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(
                    f"DB connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                    f"Retrying in {retry_delay} seconds..."
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts")
                raise
