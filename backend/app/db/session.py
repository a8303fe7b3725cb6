"""
Async database session management using SQLAlchemy 2.0.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import get_settings

settings = get_settings()

# Connection pooling sized for a handful of concurrent sync runs
async_engine = create_async_engine(
    settings.async_database_url,
    echo=settings.app_debug and settings.app_env == "development",
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

# Rows are read back after commit by the sync engine, so keep them loaded
async_session_maker = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides an async database session.

    The sync repository commits every single-row write itself; the
    trailing commit here only flushes leftovers from read-only handlers.

    Usage:
        @router.get("/crm-sync/latest/{account_id}")
        async def latest(session: AsyncSession = Depends(get_async_session)):
            ...
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
