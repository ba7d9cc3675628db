"""
访客记录模型
按 IP + User-Agent 指纹跟踪唯一访客
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from visitor_tracker.database import Base
from visitor_tracker.utils.timezone import utc_now_naive


class VisitorSource(str, enum.Enum):
    """记录来源"""
    VISITOR = "visitor"      # 真实访客请求
    MANUAL = "manual"        # 手动增加
    SYNTHETIC = "synthetic"  # 定时器自动生成


class VisitorRecord(Base):
    """访客表 - 每个指纹最多一条记录"""
    __tablename__ = "visitor_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    # 唯一约束保证同一指纹只有一条记录
    fingerprint: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    user_agent: Mapped[str] = mapped_column(String(1024), nullable=False)
    visit_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    source: Mapped[str] = mapped_column(
        String(16), default=VisitorSource.VISITOR.value, index=True, nullable=False
    )

    first_visit: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, nullable=False
    )
    last_visit: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, nullable=False
    )

    def __repr__(self) -> str:
        return f"<VisitorRecord {self.fingerprint[:12]} visits={self.visit_count}>"
