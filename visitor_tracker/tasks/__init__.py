"""
Celery 任务模块

- visitor_tasks: 自动生成访客
"""
from visitor_tracker.celery_app import celery_app

__all__ = ["celery_app"]
