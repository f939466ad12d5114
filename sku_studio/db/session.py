"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sku_studio.config import settings
from sku_studio.db.models import Base

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Create tables that do not exist yet (development convenience; alembic owns production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
