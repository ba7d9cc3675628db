"""
数据库连接模块
"""
import asyncio
import logging
from pathlib import Path
from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from visitor_tracker.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

database_url = settings.async_database_url

# SQLite（测试/本地开发）不支持连接池大小参数
_engine_kwargs = {"echo": False, "pool_pre_ping": True}
if not database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=10, max_overflow=20)

engine = create_async_engine(database_url, **_engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """SQLAlchemy 基类"""
    pass


async def get_db():
    """获取数据库会话依赖"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def run_migrations() -> None:
    """运行 Alembic 数据库迁移"""
    config_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_cfg = Config(str(config_path))
    command.upgrade(alembic_cfg, "head")


async def init_db():
    """初始化数据库表"""
    # 先导入所有模型，确保它们注册到 Base.metadata
    from visitor_tracker.models import visitor  # noqa: F401

    # 创建基础表结构（如果不存在）
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # 运行 Alembic 迁移（处理增量变更）
    if settings.auto_migrate:
        await asyncio.to_thread(run_migrations)
    else:
        logger.info("AUTO_MIGRATE disabled, skipping alembic upgrade")
