import os
import tempfile

# 必须在导入 visitor_tracker 之前设置，get_settings() 会缓存
_db_dir = tempfile.mkdtemp(prefix="visitor-tracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'visitors.db')}"
os.environ["AUTO_MIGRATE"] = "false"
os.environ["SYNTHETIC_VISITS_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

import pytest
from httpx import AsyncClient, ASGITransport

from visitor_tracker.database import AsyncSessionLocal, Base, engine
from visitor_tracker.models import VisitorRecord  # noqa: F401


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # 每个测试使用独立事件循环，连接不能跨循环复用
    await engine.dispose()


@pytest.fixture
async def db(tables):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
async def client(tables):
    from visitor_tracker.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
