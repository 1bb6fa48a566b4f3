"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..config import DatabaseConfig
from .base import Base


def _make_engine(config: DatabaseConfig):
    if config.url.startswith("sqlite"):
        # SQLite serialises writers; wait on the lock instead of failing fast.
        return create_async_engine(config.url, echo=config.echo, connect_args={"timeout": 30})
    return create_async_engine(config.url, echo=config.echo, pool_size=5, max_overflow=10)


def _make_session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class DatabaseEngine:
    """Holds the engine and its session factory.

    Created once at startup and shared by every component that touches
    the relational store.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.engine = _make_engine(config)
        self.session = _make_session_factory(self.engine)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
