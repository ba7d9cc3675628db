"""
Celery 应用配置

SYNTHETIC_VISIT_MODE=celery 时由 beat 定时生成访客记录，
替代 Web 进程内的定时器（多实例部署时只需一个 beat）。
"""
import os
from celery import Celery

from visitor_tracker.config import get_settings

settings = get_settings()

# Redis 配置
broker_url = settings.celery_broker or settings.redis_url
backend_url = settings.celery_backend or settings.redis_url

celery_app = Celery(
    "visitor_tracker",
    broker=broker_url,
    backend=backend_url,
    include=[
        "visitor_tracker.tasks.visitor_tasks",
    ]
)

# Celery 配置
celery_app.conf.update(
    # 任务结果过期时间（1小时）
    result_expires=3600,
    # 任务结果序列化格式
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 单次写入很快，超时设置得较短
    task_time_limit=60,
    task_soft_time_limit=50,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # 任务路由
    task_routes={
        "visitor_tracker.tasks.visitor_tasks.*": {"queue": "visitors"},
    },
    task_reject_on_worker_lost=True,
)

# 定时任务
if settings.synthetic_visits_enabled and settings.synthetic_visit_mode == "celery":
    celery_app.conf.beat_schedule = {
        "create-synthetic-visit": {
            "task": "visitor_tracker.tasks.visitor_tasks.create_synthetic_visit_task",
            "schedule": settings.synthetic_visit_interval_seconds,
        },
    }

# Worker 配置
celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = os.cpu_count() or 4

if __name__ == "__main__":
    celery_app.start()
