"""Async SQLAlchemy engine and session management.

The engine is built from an explicit ``Settings`` object at application
startup (see ``main.lifespan``) and kept on ``app.state``.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from leave_engine.config import Settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for *settings*."""
    kwargs = {}
    if settings.DATABASE_URL.startswith("postgresql"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.ENVIRONMENT == "development",
        **kwargs,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yield an async database session.

    Commits when the endpoint returns, rolls back on any error so the
    ledger and the balance rows are written together or not at all.
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
