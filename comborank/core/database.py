"""Async SQLAlchemy database setup."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from comborank.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.database_echo)
    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.database_echo,
        pool_pre_ping=True,
        pool_recycle=300,  # Recycle connections every 5 min to avoid server-side timeouts
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the project's session defaults."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url)
async_session_maker = build_session_maker(engine)


@asynccontextmanager
async def get_session_context(
    *,
    commit_on_exit: bool = True,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session as context manager for non-DI usage."""
    factory = session_maker or async_session_maker
    async with factory() as session:
        try:
            yield session
            if commit_on_exit:
                await session.commit()
        except Exception as e:
            logger.warning(f"Database session error: {repr(e)}, rolling back")
            try:
                await session.rollback()
            except Exception:
                logger.warning("Rollback also failed (connection likely closed)")
            raise


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database (create tables if needed)."""
    logger.info("Initializing database tables")
    from comborank.models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    logger.info("Closing database connections")
    await engine.dispose()
