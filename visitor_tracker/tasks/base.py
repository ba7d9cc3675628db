"""
Celery 任务基础工具

提供：
- 同步数据库会话管理
- 任务结果记录
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from visitor_tracker.config import get_settings

_sync_engine = None
_SessionLocal: Optional[sessionmaker] = None

logger = logging.getLogger(__name__)


def sync_database_url(url: str) -> str:
    """异步驱动 URL 转为同步驱动 URL"""
    return (
        url.replace("postgresql+asyncpg://", "postgresql://")
        .replace("sqlite+aiosqlite://", "sqlite://")
    )


def _get_sync_sessionmaker() -> sessionmaker:
    global _sync_engine, _SessionLocal
    if _SessionLocal is None:
        settings = get_settings()
        url = sync_database_url(settings.database_url)
        kwargs = {"pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        _sync_engine = create_engine(url, **kwargs)
        _SessionLocal = sessionmaker(bind=_sync_engine)
    return _SessionLocal


def get_task_db():
    """
    为任务获取同步数据库会话

    注意：Celery 任务运行在单独的进程中，需要独立的数据库会话
    """
    return _get_sync_sessionmaker()()


def record_task_result(
    task_id: str,
    task_name: str,
    status: str,
    result: Optional[Any] = None,
    error: Optional[str] = None,
    duration: float = 0,
) -> Dict[str, Any]:
    """
    记录任务执行结果

    Args:
        task_id: 任务ID
        task_name: 任务名称
        status: 任务状态 (success/failed)
        result: 任务结果
        error: 错误信息
        duration: 执行时长（秒）

    Returns:
        任务结果字典
    """
    log_data = {
        "task_id": task_id,
        "task_name": task_name,
        "status": status,
        "duration": f"{duration:.2f}s",
        "timestamp": datetime.now().isoformat(),
    }

    if error:
        log_data["error"] = error
        logger.error(f"Task failed: {log_data}")
    else:
        log_data["result"] = result
        logger.info(f"Task completed: {log_data}")

    return log_data
