import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Keep the module-level engine off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from intake.database import Base  # noqa: E402
from intake.main import app  # noqa: E402
from intake.services.notifier import StudyNotifier  # noqa: E402
from intake.services.result_cache import ResultCache  # noqa: E402


class FakeRedis:
    """The few redis.asyncio calls ResultCache makes, backed by a dict."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def get(self, key):
        return self.values.get(key)

    async def ping(self):
        return True

    async def aclose(self):
        pass


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def result_cache(fake_redis):
    return ResultCache(fake_redis, ttl_seconds=3600)


@pytest.fixture
def notifier():
    return StudyNotifier(send_timeout=1.0)


@pytest_asyncio.fixture
async def client():
    """FastAPI test client using in-process ASGI transport (lifespan not run)."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
