"""行情、K 线与技术指标模型"""

import math
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Candle(BaseModel):
    """单根 K 线"""

    model_config = ConfigDict(frozen=True)

    time: datetime
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None


# ── 技术指标 ──────────────────────────────────────────────

class TrendSignal(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    RANGING = "ranging"


class OscillatorSignal(str, Enum):
    OVERBOUGHT = "overbought"
    OVERSOLD = "oversold"
    NEUTRAL = "neutral"


class MacdIndicator(BaseModel):
    macd: Optional[float] = None
    signal: Optional[float] = None
    histogram: Optional[float] = None
    bias: Optional[TrendSignal] = None


class RsiIndicator(BaseModel):
    value: Optional[float] = None
    bias: Optional[OscillatorSignal] = None


class KdjIndicator(BaseModel):
    k: Optional[float] = None
    d: Optional[float] = None
    j: Optional[float] = None
    bias: Optional[OscillatorSignal] = None


class TrendIndicator(BaseModel):
    """DK 多空指标：最新收盘价相对近 5 日均价的偏离（%）"""
    value: Optional[float] = None
    bias: Optional[TrendSignal] = None


class IndicatorSet(BaseModel):
    macd: Optional[MacdIndicator] = None
    rsi: Optional[RsiIndicator] = None
    kdj: Optional[KdjIndicator] = None
    trend: Optional[TrendIndicator] = None

    def is_empty(self) -> bool:
        return not any((self.macd, self.rsi, self.kdj, self.trend))


# ── 实时行情 ──────────────────────────────────────────────

def compute_change_percent(current: float, previous_close: float) -> Optional[float]:
    """涨跌幅（%，保留两位小数）；昨收无效时返回 None，不暴露 NaN / Infinity"""
    try:
        current = float(current)
        previous_close = float(previous_close)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(current) and math.isfinite(previous_close)) or previous_close <= 0:
        return None
    value = (current - previous_close) / previous_close * 100
    return round(value, 2) if math.isfinite(value) else None


class Quote(BaseModel):
    """某一时刻的实时行情快照"""

    code: str
    name: str = ""
    source: str = ""
    current_price: float = 0.0
    previous_close: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    volume: float = 0.0
    change: float = 0.0
    change_percent: Optional[float] = None
    as_of: datetime
    indicators: Optional[IndicatorSet] = None


class PriceRecord(BaseModel):
    """持久化的行情记录"""

    timestamp: datetime
    code: str
    name: str
    source: str
    price: float
    change: float
    change_percent: Optional[float] = None
    high: float
    low: float
    volume: float
    indicators: Optional[str] = None
