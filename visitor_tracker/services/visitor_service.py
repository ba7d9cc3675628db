"""
访客服务 - 统一管理访客记录的写入和查询

此服务提供：
1. 基于 IP + User-Agent 的访客指纹
2. 原子性的访客上报（新建 / 冷却期外计数 / 冷却期内忽略）
3. 访客数量与原始数据查询
4. 手动增加访客、定时器自动生成访客
"""
import enum
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from visitor_tracker.config import get_settings
from visitor_tracker.models.visitor import VisitorRecord, VisitorSource
from visitor_tracker.utils.metrics import VISITS_TRACKED
from visitor_tracker.utils.timezone import utc_now_naive, to_utc, epoch_millis

logger = logging.getLogger(__name__)

MANUAL_USER_AGENT = "Manual Increment"
SYNTHETIC_USER_AGENT = "System Auto Increment"
SYNTHETIC_IP = "127.0.0.1"

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class VisitorServiceError(Exception):
    """访客操作异常"""
    def __init__(self, message: str, error_code: str = "VISITOR_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class TrackOutcome(str, enum.Enum):
    """访客上报结果"""
    CREATED = "created"   # 首次出现，新建记录
    COUNTED = "counted"   # 超过冷却期，访问次数 +1
    IGNORED = "ignored"   # 冷却期内重复访问，不做修改


@dataclass
class TrackResult:
    fingerprint: str
    outcome: TrackOutcome
    visit_count: Optional[int] = None


def generate_fingerprint(ip: str, user_agent: str) -> str:
    """
    生成访客指纹

    直接拼接原始 IP 和 User-Agent 后做 SHA-256，不做任何规范化，
    因此同一客户端的不同文本表示会得到不同指纹。
    """
    return hashlib.sha256((ip + user_agent).encode("utf-8")).hexdigest()


def _cooldown(hours: Optional[float] = None) -> timedelta:
    if hours is None:
        hours = get_settings().visit_cooldown_hours
    return timedelta(hours=hours)


def _dialect_insert(db: AsyncSession):
    """按数据库方言选择支持 ON CONFLICT 的 insert 构造器"""
    dialect = db.bind.dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise VisitorServiceError(f"不支持的数据库方言: {dialect}", "UNSUPPORTED_DIALECT")
    return insert


async def track_visit(
    db: AsyncSession,
    ip: str,
    user_agent: str,
    now: Optional[datetime] = None,
    cooldown_hours: Optional[float] = None,
) -> TrackResult:
    """
    上报一次访问（单条语句完成查找 + 写入）

    INSERT ... ON CONFLICT (fingerprint) DO UPDATE ... WHERE last_visit <= 截止时间
    RETURNING visit_count：
    - 返回 1：新访客
    - 返回 >1：冷却期外的重复访问，已计数
    - 无返回行：冷却期内的重复访问，未修改

    Args:
        db: 数据库会话
        ip: 客户端 IP（原样使用）
        user_agent: 客户端 User-Agent（原样使用）
        now: 当前时间，默认 UTC 当前时间
        cooldown_hours: 冷却时长，默认读取配置

    Returns:
        上报结果
    """
    now = to_utc(now) if now is not None else utc_now_naive()
    cutoff = now - _cooldown(cooldown_hours)
    fingerprint = generate_fingerprint(ip, user_agent)

    insert = _dialect_insert(db)
    stmt = insert(VisitorRecord).values(
        id=str(uuid.uuid4()),
        ip=ip,
        fingerprint=fingerprint,
        user_agent=user_agent,
        visit_count=1,
        source=VisitorSource.VISITOR.value,
        first_visit=now,
        last_visit=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["fingerprint"],
        set_={
            "visit_count": VisitorRecord.visit_count + 1,
            "last_visit": stmt.excluded.last_visit,
        },
        where=VisitorRecord.last_visit <= cutoff,
    ).returning(VisitorRecord.visit_count)

    result = await db.execute(stmt)
    visit_count = result.scalar_one_or_none()

    if visit_count is None:
        outcome = TrackOutcome.IGNORED
    elif visit_count == 1:
        outcome = TrackOutcome.CREATED
    else:
        outcome = TrackOutcome.COUNTED

    VISITS_TRACKED.labels(outcome.value).inc()
    logger.debug("Visitor %s... tracked: %s", fingerprint[:12], outcome.value)
    return TrackResult(fingerprint=fingerprint, outcome=outcome, visit_count=visit_count)


async def get_visitor(db: AsyncSession, fingerprint: str) -> Optional[VisitorRecord]:
    """按指纹查询访客记录（upsert 不经过 identity map，这里强制刷新）"""
    result = await db.execute(
        select(VisitorRecord)
        .where(VisitorRecord.fingerprint == fingerprint)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _insert_unique(db: AsyncSession, values: dict, attempts: int = 5) -> str:
    """
    写入一条新记录，由唯一索引判定指纹冲突

    INSERT ... ON CONFLICT (fingerprint) DO NOTHING RETURNING id：
    无返回行说明指纹已被占用（同一毫秒内多次生成），追加随机后缀重试。

    Returns:
        实际写入的指纹
    """
    insert = _dialect_insert(db)
    base = values["fingerprint"]
    fingerprint = base
    for _ in range(attempts):
        stmt = (
            insert(VisitorRecord)
            .values(**{**values, "id": str(uuid.uuid4()), "fingerprint": fingerprint})
            .on_conflict_do_nothing(index_elements=["fingerprint"])
            .returning(VisitorRecord.id)
        )
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            return fingerprint
        fingerprint = f"{base}-{secrets.token_hex(3)}"
    raise VisitorServiceError(f"无法生成唯一指纹: {base}", "FINGERPRINT_CONFLICT")


async def count_visitors(db: AsyncSession) -> Tuple[int, int]:
    """
    统计访客

    Returns:
        (记录数即唯一指纹数, 所有记录 visit_count 之和)
    """
    result = await db.execute(
        select(
            func.count(VisitorRecord.id),
            func.coalesce(func.sum(VisitorRecord.visit_count), 0),
        )
    )
    count, total_visits = result.one()
    return int(count or 0), int(total_visits or 0)


async def list_visitors(db: AsyncSession) -> List[VisitorRecord]:
    """返回全部访客记录（不分页）"""
    result = await db.execute(
        select(VisitorRecord).order_by(VisitorRecord.first_visit, VisitorRecord.id)
    )
    return list(result.scalars().all())


async def increase_visitors(
    db: AsyncSession,
    amount: int,
    max_amount: Optional[int] = None,
) -> int:
    """
    手动增加访客

    逐条提交，不做批量和回滚：中途失败时已提交的记录保留，异常继续上抛。

    Args:
        db: 数据库会话
        amount: 增加数量
        max_amount: 单次上限，默认读取配置

    Returns:
        实际新增的记录数
    """
    if max_amount is None:
        max_amount = get_settings().manual_increase_max
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise VisitorServiceError("增加数量必须为正整数", "INVALID_AMOUNT")
    if amount > max_amount:
        raise VisitorServiceError(f"单次最多增加 {max_amount} 个访客", "AMOUNT_TOO_LARGE")

    created = 0
    for i in range(amount):
        now = utc_now_naive()
        await _insert_unique(db, {
            "ip": f"127.0.0.{i}",
            "fingerprint": f"manual-{epoch_millis(now)}-{i}",
            "user_agent": MANUAL_USER_AGENT,
            "visit_count": 1,
            "source": VisitorSource.MANUAL.value,
            "first_visit": now,
            "last_visit": now,
        })
        await db.commit()
        created += 1

    logger.info("Manually added %s visitors", created)
    return created


def build_synthetic_visit(now: Optional[datetime] = None, suffix: str = "") -> VisitorRecord:
    """构造一条自动生成的访客记录（未持久化）"""
    now = now or utc_now_naive()
    fingerprint = f"auto-{epoch_millis(now)}"
    if suffix:
        fingerprint = f"{fingerprint}-{suffix}"
    return VisitorRecord(
        ip=SYNTHETIC_IP,
        fingerprint=fingerprint,
        user_agent=SYNTHETIC_USER_AGENT,
        visit_count=1,
        source=VisitorSource.SYNTHETIC.value,
        first_visit=now,
        last_visit=now,
    )


async def create_synthetic_visit(db: AsyncSession, now: Optional[datetime] = None) -> VisitorRecord:
    """
    定时器生成一条访客记录

    同一毫秒内已存在相同指纹时追加随机后缀
    """
    draft = build_synthetic_visit(now)
    fingerprint = await _insert_unique(db, {
        "ip": draft.ip,
        "fingerprint": draft.fingerprint,
        "user_agent": draft.user_agent,
        "visit_count": draft.visit_count,
        "source": draft.source,
        "first_visit": draft.first_visit,
        "last_visit": draft.last_visit,
    })
    return await get_visitor(db, fingerprint)
