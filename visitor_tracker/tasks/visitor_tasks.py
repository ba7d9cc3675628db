"""
访客任务

- create_synthetic_visit_task: beat 定时生成一条访客记录

Worker 进程不暴露 /metrics，这里只记录任务日志，不更新 Prometheus 计数。
"""
import logging
import secrets
import uuid
from datetime import datetime
from typing import Dict, Any

from sqlalchemy import select

from visitor_tracker.celery_app import celery_app
from visitor_tracker.models.visitor import VisitorRecord
from visitor_tracker.services.visitor_service import (
    _INSERT_BY_DIALECT,
    VisitorServiceError,
    build_synthetic_visit,
)
from visitor_tracker.tasks.base import get_task_db, record_task_result

logger = logging.getLogger(__name__)


def insert_synthetic_visit(db, attempts: int = 5) -> VisitorRecord:
    """同步会话中写入一条自动访客记录，指纹冲突时追加随机后缀重试"""
    dialect = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise VisitorServiceError(f"不支持的数据库方言: {dialect}", "UNSUPPORTED_DIALECT")

    draft = build_synthetic_visit()
    for _ in range(attempts):
        stmt = (
            insert(VisitorRecord)
            .values(
                id=str(uuid.uuid4()),
                ip=draft.ip,
                fingerprint=draft.fingerprint,
                user_agent=draft.user_agent,
                visit_count=draft.visit_count,
                source=draft.source,
                first_visit=draft.first_visit,
                last_visit=draft.last_visit,
            )
            .on_conflict_do_nothing(index_elements=["fingerprint"])
            .returning(VisitorRecord.id)
        )
        record_id = db.execute(stmt).scalar_one_or_none()
        if record_id is not None:
            db.commit()
            return db.execute(
                select(VisitorRecord).where(VisitorRecord.id == record_id)
            ).scalar_one()
        draft = build_synthetic_visit(draft.last_visit, suffix=secrets.token_hex(3))
    raise VisitorServiceError("无法生成唯一指纹", "FINGERPRINT_CONFLICT")


@celery_app.task(
    name="visitor_tracker.tasks.visitor_tasks.create_synthetic_visit_task",
    bind=True,
)
def create_synthetic_visit_task(self) -> Dict[str, Any]:
    """
    生成一条自动访客记录（定时任务）

    失败只记录，不重试，下一次调度照常执行

    Returns:
        任务结果
    """
    task_id = self.request.id
    start_time = datetime.now()

    db = get_task_db()

    try:
        record = insert_synthetic_visit(db)
        duration = (datetime.now() - start_time).total_seconds()

        return record_task_result(
            task_id=task_id,
            task_name="create_synthetic_visit",
            status="success",
            result={"fingerprint": record.fingerprint},
            duration=duration,
        )

    except Exception as e:
        logger.error(f"[{task_id}] Error adding auto-increment visitor: {e}")
        db.rollback()
        duration = (datetime.now() - start_time).total_seconds()

        return record_task_result(
            task_id=task_id,
            task_name="create_synthetic_visit",
            status="failed",
            error=str(e),
            duration=duration,
        )

    finally:
        db.close()
