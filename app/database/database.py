import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.config import settings

logger = logging.getLogger(__name__)


def create_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.get_database_url()
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"timeout": 30})
    return create_async_engine(url, pool_size=10, max_overflow=20, pool_pre_ping=True)


engine = create_engine()

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    from app.database.crud.device import ensure_device_tables

    async with AsyncSessionLocal() as db:
        await ensure_device_tables(db)
    logger.info("✅ Таблицы устройств готовы")


async def close_db() -> None:
    await engine.dispose()
