"""
自动访客定时器

由应用生命周期持有：启动时 start()，关闭时 stop() 取消任务。
每次触发等待写入完成后再进入下一次等待，因此不会重叠执行。
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitor_tracker.database import AsyncSessionLocal
from visitor_tracker.services.visitor_service import create_synthetic_visit
from visitor_tracker.utils.metrics import SYNTHETIC_VISITS

logger = logging.getLogger(__name__)


class SyntheticVisitScheduler:
    """
    固定间隔生成访客记录

    使用方式:
        scheduler = SyntheticVisitScheduler(interval_seconds=60)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        interval_seconds: float = 60,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._session_factory = session_factory
        self._task: Optional[asyncio.Task] = None
        self.fired = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """启动定时任务（重复调用无副作用）"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="synthetic-visits")
        logger.info("Synthetic visit scheduler started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        """取消定时任务并等待其退出"""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            # 调用方自身被取消时继续上抛
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        logger.info("Synthetic visit scheduler stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.fire_once()

    async def fire_once(self) -> bool:
        """
        执行一次自动生成

        失败只记录日志，不影响后续触发

        Returns:
            是否成功
        """
        self.fired += 1
        try:
            async with self._session_factory() as db:
                record = await create_synthetic_visit(db)
                await db.commit()
        except Exception as e:
            self.failed += 1
            SYNTHETIC_VISITS.labels("failed").inc()
            logger.error(f"Error adding auto-increment visitor: {e}", exc_info=True)
            return False

        SYNTHETIC_VISITS.labels("success").inc()
        logger.info("Auto-increment visitor added: %s", record.fingerprint)
        return True
