
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from .config import Settings
from .models import metadata


def create_engine(settings: Settings) -> AsyncEngine:
    # Ensure the DATABASE_URL uses an async driver (asyncpg) for SQLAlchemy asyncio
    if settings.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL must use an async driver for async SQLAlchemy (e.g. postgresql+asyncpg://...). "
            "Update your DATABASE_URL or set the DATABASE_URL environment variable accordingly."
        )
    return create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
