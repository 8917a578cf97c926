"""
Database Connection and Session Management

The Job Store, status history, both queues and tenant config live in one
database, so a transition and its queue side effects share a transaction.
"""
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from jtd_pipeline.core.config import settings


def _engine_options(url: str, *, pooled: bool) -> dict:
    options: dict = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if pooled and not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return options


engine = create_async_engine(
    settings.DATABASE_URL,
    **_engine_options(settings.DATABASE_URL, pooled=False)
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session():
    """
    Fresh engine and session for a Celery task.

    Each task runs in its own event loop, so the module-level engine (bound to
    another loop) cannot be reused there.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **_engine_options(settings.DATABASE_URL, pooled=True)
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with task_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()

    await task_engine.dispose()


async def create_tables(bind: AsyncEngine) -> None:
    """Create all JTD tables (idempotent)"""
    import jtd_pipeline.db.models  # noqa: F401  registers mappers on Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(session: AsyncSession) -> bool:
    """Readiness check: a trivial round-trip to the database"""
    await session.execute(text("SELECT 1"))
    return True
