from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import declarative_base
from orchestrator.src.config import get_settings

Base = declarative_base()

def build_engine(database_url: str = None, **kwargs) -> AsyncEngine:
    """Create an async engine, upgrading postgresql:// to postgresql+asyncpg://."""
    database_url = database_url or get_settings().database_url
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return create_async_engine(database_url, **kwargs)

def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db(engine: AsyncEngine):
    # Registers the tables on Base.metadata
    from orchestrator.src.models import db  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
