"""
config/database.py
Async SQLAlchemy wiring. PostgreSQL (asyncpg) in deployments, aiosqlite for
local runs and tests. Three ways to get a session:

- get_db: one request-scoped session, committed when the handler returns
- get_session_factory: the factory itself, for the payment flow which commits
  pending state before the STK poll and settles in a fresh transaction
- create_worker_session_factory: for Celery tasks, one event loop per task
"""

from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from config.settings import settings


class Base(DeclarativeBase):
    pass


def _make_factory(engine) -> async_sessionmaker:
    # Rows are read after commit in the payment flow, so they must not expire
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def _pool_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_pool_options(settings.DATABASE_URL),
)
AsyncSessionLocal = _make_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


def create_worker_session_factory() -> async_sessionmaker:
    """NullPool: asyncio.run() closes the loop after every task, so no connection may outlive it."""
    return _make_factory(create_async_engine(settings.DATABASE_URL, poolclass=NullPool))


async def init_db() -> None:
    import shared.models.models  # noqa: F401  (register mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping_db() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    await engine.dispose()
