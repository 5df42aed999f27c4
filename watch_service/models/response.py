"""HTTP 响应模型"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from watch_service.models.timeseries import TimeseriesBucket


class ApiResponse(BaseModel):
    """统一响应封装：success + data / error"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "成功") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "失败") -> "ApiResponse":
        return cls(success=False, error=error, message=message)


class TimeseriesPayload(BaseModel):
    """GET /api/timeseries/{code} 的 data 部分"""
    code: str
    interval_minutes: int
    limit: int
    data: List[TimeseriesBucket] = Field(default_factory=list)


class QuoteSnapshotItem(BaseModel):
    code: str
    name: str
    quote: Optional[dict] = None


class LatestQuotesPayload(BaseModel):
    """GET /api/quotes/latest 的 data 部分；休市期间 quotes 为上一轮结果或空"""
    market_state: str
    updated_at: Optional[datetime] = None
    quotes: List[QuoteSnapshotItem] = Field(default_factory=list)
