"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio

from core.database import build_engine, build_session_maker
from ingestion.staging.object_store import LocalObjectStore
from models.base import Base
from tests.factories import FakeClock, make_source


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine with all tables"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def orders_source():
    return make_source("orders")
