"""Database configuration and session management."""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

DATABASE_URL = "sqlite+aiosqlite:///./price_cache.db"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def init_db(db_engine=None):
    """Initialize the database, creating all tables."""
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def create_engine_and_session_maker(url: str):
    """Engine and session factory for a database URL other than the default."""
    db_engine = create_async_engine(url, echo=False)
    return db_engine, async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
