"""
访客相关的 Pydantic Schemas

对外字段使用 camelCase（userAgent、visitCount ...）
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase 序列化基类"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class TrackVisitorRequest(CamelModel):
    """访客上报请求（允许空字符串，不允许缺失或非字符串）"""
    ip: StrictStr = Field(..., max_length=64)
    user_agent: StrictStr = Field(..., max_length=1024)


class IncreaseVisitorsRequest(CamelModel):
    """手动增加访客请求（上限在路由中按配置校验）"""
    amount: StrictInt = Field(..., ge=1)


class TrackVisitorResponse(CamelModel):
    """访客上报响应"""
    message: str
    count: int
    total_visits: int


class VisitorCountResponse(CamelModel):
    """访客数量响应"""
    count: int
    total_visits: int


class IncreaseVisitorsResponse(CamelModel):
    """手动增加访客响应"""
    message: str
    count: int


class VisitorRecordResponse(CamelModel):
    """访客记录"""
    id: str
    ip: str
    fingerprint: str
    user_agent: str
    visit_count: int
    last_visit: datetime
    first_visit: Optional[datetime] = None
    source: str
