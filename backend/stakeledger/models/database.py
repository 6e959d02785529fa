"""Database engine and session management"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


def create_engine(database_url: str, pool_size: Optional[int] = None, echo: bool = False) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to pooled drivers"""
    kwargs = {"echo": echo}
    if pool_size and not database_url.startswith("sqlite"):
        kwargs["pool_size"] = pool_size
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables"""
    # Register all tables on the metadata before creating them
    from stakeledger import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections"""
    await engine.dispose()
