"""Pytest configuration."""

import os

# Ensure test environment
os.environ.setdefault("FC_PUBLISHABLE_KEY", "fc_pub_test")
os.environ.setdefault("FC_SECRET_KEY", "fc_sec_test")
os.environ.setdefault("FC_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("FC_PIXEL_ID", "1234567890")
os.environ.setdefault("FC_ACCESS_TOKEN", "test-token")
os.environ.setdefault("FC_DEBUG", "true")

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from funnelcast.models.tables import Base


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh file-backed SQLite database per test, schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'funnelcast.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
