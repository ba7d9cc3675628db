"""
访客统计路由
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from visitor_tracker.config import get_settings
from visitor_tracker.database import get_db
from visitor_tracker.schemas.visitor import (
    TrackVisitorRequest,
    TrackVisitorResponse,
    VisitorCountResponse,
    IncreaseVisitorsRequest,
    IncreaseVisitorsResponse,
    VisitorRecordResponse,
)
from visitor_tracker.services import visitor_service
from visitor_tracker.services.visitor_service import VisitorServiceError

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()


def _server_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=message,
    )


@router.post("/track-visitor", response_model=TrackVisitorResponse)
async def track_visitor(
    request: TrackVisitorRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    上报访客

    同一指纹 24 小时内重复上报不计数；超过冷却期访问次数 +1。

    Returns:
        成功消息、唯一访客数（count）和累计访问次数（totalVisits）
    """
    try:
        await visitor_service.track_visit(db, request.ip, request.user_agent)
        await db.commit()
        count, total_visits = await visitor_service.count_visitors(db)
    except (SQLAlchemyError, VisitorServiceError) as e:
        logger.error(f"Error tracking visitor: {e}", exc_info=True)
        raise _server_error("Error tracking visitor")

    return TrackVisitorResponse(
        message="Visitor tracked successfully!",
        count=count,
        total_visits=total_visits,
    )


@router.get("/visitor-count", response_model=VisitorCountResponse)
async def get_visitor_count(db: AsyncSession = Depends(get_db)):
    """获取访客数量"""
    try:
        count, total_visits = await visitor_service.count_visitors(db)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visitor count: {e}", exc_info=True)
        raise _server_error("Error fetching visitor count")

    return VisitorCountResponse(count=count, total_visits=total_visits)


@router.post("/increase-visitors", response_model=IncreaseVisitorsResponse)
async def increase_visitors(
    request: IncreaseVisitorsRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    手动增加访客

    Raises:
        HTTPException: 数量超过上限时返回 422，写入失败时返回 500
    """
    if request.amount > settings.manual_increase_max:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"amount must be at most {settings.manual_increase_max}",
        )

    try:
        await visitor_service.increase_visitors(
            db, request.amount, max_amount=settings.manual_increase_max
        )
        count, _ = await visitor_service.count_visitors(db)
    except (SQLAlchemyError, VisitorServiceError) as e:
        logger.error(f"Error manually adding visitors: {e}", exc_info=True)
        raise _server_error("Failed to manually add visitors")

    return IncreaseVisitorsResponse(
        message=f"Manually added {request.amount} visitors",
        count=count,
    )


@router.get("/visitor-data", response_model=List[VisitorRecordResponse])
async def get_visitor_data(db: AsyncSession = Depends(get_db)):
    """获取全部访客数据（不分页）"""
    try:
        visitors = await visitor_service.list_visitors(db)
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visitor data: {e}", exc_info=True)
        raise _server_error("Error fetching visitor data")

    return [VisitorRecordResponse.model_validate(v) for v in visitors]
