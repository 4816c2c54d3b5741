from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive ``DateTime`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_database_url(raw_url: str) -> str:
    # if someone provided a sync URL by mistake, upgrade it to async
    if raw_url.startswith("postgresql+psycopg"):
        return raw_url.replace("postgresql+psycopg", "postgresql+asyncpg", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(normalize_database_url(database_url), echo=False, future=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Only meant for dev and tests."""
    # Register every model on Base.metadata
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
