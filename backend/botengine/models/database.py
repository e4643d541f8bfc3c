"""Database configuration and session management."""

import os
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("BOTENGINE_DATABASE_URL", "sqlite+aiosqlite:///./botengine.db")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


def create_session_factory(url: str) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Build an engine and session factory for a database URL other than the default."""
    db_engine = create_async_engine(url, echo=False)
    return db_engine, async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with async_session_maker() as session:
        yield session


async def init_db(db_engine: Optional[AsyncEngine] = None):
    """Initialize the database, creating all tables."""
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
