from __future__ import annotations
from typing import AsyncGenerator
from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from schema_engine.config import DB_URL

engine = create_async_engine(DB_URL, echo=False, future=True)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def make_session_factory(url: str) -> async_sessionmaker:
    """Build an engine + session factory for an alternate database (tests, scripts)."""
    other = create_async_engine(url, echo=False, future=True)
    return async_sessionmaker(other, class_=AsyncSession, expire_on_commit=False)

async def init_db(bind=None) -> None:
    # Import table modules so their metadata is registered before create_all
    import schema_engine.models  # noqa: F401
    import schema_engine.settings_models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
