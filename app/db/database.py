"""
Database engines and sessions

ה-API משתמש ב-engine ברמת המודול. ה-worker ו-tasks של Celery בונים engine
משלהם בתוך ה-event loop שבו הם רצים — חיבורי asyncpg לא עוברים בין
לולאות ("attached to a different loop").
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()


def build_engine(**pool_options: Any) -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        **pool_options,
    )


def session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: ה-worker קורא שדות של ההודעה אחרי commit של ה-claim
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = session_maker(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency"""
    async with AsyncSessionLocal() as session:
        yield session


def create_task_engine() -> AsyncEngine:
    """Engine for the worker process / one Celery task run."""
    return build_engine(pool_size=5, max_overflow=10)


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Session on a short-lived engine bound to the running event loop.

    Meant for one-off units of work (sweeper task, scripts). A long-running
    loop should create one engine with create_task_engine() and reuse it.
    """
    task_engine = create_task_engine()
    try:
        async with session_maker(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
