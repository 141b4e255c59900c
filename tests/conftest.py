"""Shared fixtures for reconciler tests."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reconciler.db.memory import InMemoryCatalogStore
from reconciler.db.models import Base
from reconciler.db.repository import SqlCatalogStore


@pytest.fixture
def store():
    """Fresh in-memory catalog store."""
    return InMemoryCatalogStore()


@pytest.fixture
async def sql_store(tmp_path):
    """SqlCatalogStore on a throwaway sqlite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield SqlCatalogStore(session_factory)
    finally:
        await engine.dispose()
