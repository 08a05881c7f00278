from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from src.config.settings import settings


def async_database_url(url: str) -> str:
    """Rewrite plain PostgreSQL URLs to the asyncpg driver.

    Managed databases hand out postgres:// or postgresql:// URLs; the async
    engine needs postgresql+asyncpg://. Other URLs pass through unchanged.
    """
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def create_engine_for(url: str, pooled: bool = True) -> AsyncEngine:
    """Async engine for ``url``.

    SQLite gets a thread-agnostic connection; PostgreSQL gets the configured
    pool. Celery tasks pass ``pooled=False`` because each task runs on its
    own event loop and cannot share pooled connections.
    """
    url = async_database_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.DEBUG, connect_args={"check_same_thread": False})
    if not pooled:
        return create_async_engine(url, poolclass=NullPool)
    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; the allocation service re-reads with
    # populate_existing when it needs fresh state.
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = create_engine_for(settings.DATABASE_URL)
AsyncSessionLocal = session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create missing tables for every registered model."""
    from src.domains import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
