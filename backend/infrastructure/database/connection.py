"""Database connection and session management."""
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import Settings
from .models.base import Base


def create_engine_from_settings(config: Settings) -> AsyncEngine:
    """Build the async engine for the configured database URL."""
    # Enforce SSL for database connections in production
    if config.environment == "production":
        connect_args = {"ssl": "require"}
    else:
        connect_args = {}

    return create_async_engine(
        config.database_url,
        echo=config.database_echo,
        pool_pre_ping=True,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=10,      # raise TimeoutError after 10s if no connection is available
        pool_recycle=3600,    # recycle connections after 1 hour to prevent stale connections
        connect_args=connect_args,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by every pipeline service."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(bind: AsyncEngine) -> None:
    """Initialize database tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: AsyncEngine) -> None:
    """Close database connections."""
    await bind.dispose()
