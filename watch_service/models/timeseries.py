"""分时聚合模型"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class Tick(BaseModel):
    """原始采样点（非 OHLC），通常来自持久化的行情记录"""

    model_config = ConfigDict(extra="ignore")

    timestamp: Any
    price: Optional[float] = None
    close: Optional[float] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[float] = None


class TimeseriesBucket(BaseModel):
    """一个分时窗口的聚合结果"""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    avg_price: Optional[float] = None
    volume: Optional[float] = None
    amplitude: Optional[float] = None
    change_percent: Optional[float] = None
