"""Declarative base and database sessions.

The API process shares one lazily created engine. Celery tasks each run on
a fresh event loop, so they get a short-lived engine of their own.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache

from sqlalchemy import DateTime, func
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gridpilot.config import get_settings


def create_engine() -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        echo=settings.debug,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache
def session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the API process engine, created on first use."""
    return make_session_factory(create_engine())


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Session on a throwaway engine, disposed when the task is done."""
    task_engine = create_engine()
    try:
        async with make_session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()


class Base(DeclarativeBase):
    """Base class for GridPilot tables."""


class SyncTimestamps:
    """When the sync process first wrote a row and when it last touched it."""

    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
