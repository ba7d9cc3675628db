"""
数据库模型
"""
from visitor_tracker.models.visitor import VisitorRecord, VisitorSource

__all__ = [
    "VisitorRecord",
    "VisitorSource",
]
