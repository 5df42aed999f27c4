"""自选股配置模型（对应 config.json）"""

import logging
import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL_MS = 5000
DEFAULT_ALERT_THRESHOLD = 1.0


class QuoteSourceName(str, Enum):
    """实时行情数据源"""
    AUTO = "auto"
    SINA = "sina"
    TENCENT = "tencent"
    YAHOO = "yahoo"


def parse_time_to_minutes(value: str) -> Optional[int]:
    """'HH:MM' → 当日分钟数，无法解析返回 None"""
    try:
        hour, minute = (int(part) for part in str(value).split(":"))
    except (TypeError, ValueError):
        return None
    if (hour, minute) == (24, 0):
        return 24 * 60
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour * 60 + minute


class WatchedInstrument(BaseModel):
    """自选股条目"""

    model_config = ConfigDict(frozen=True)

    code: str
    name: str = ""
    source: QuoteSourceName = QuoteSourceName.AUTO

    @field_validator("source", mode="before")
    @classmethod
    def _unknown_source_to_auto(cls, value: Any) -> Any:
        if value is None or value == "":
            return QuoteSourceName.AUTO
        try:
            return QuoteSourceName(str(value).lower())
        except ValueError:
            logger.warning(f"未知数据源 {value!r}，按 auto 处理")
            return QuoteSourceName.AUTO

    @property
    def display_name(self) -> str:
        return self.name or self.code


class TradingWindow(BaseModel):
    """交易时段，左闭右开 [start, end)，按本地时间每日重复"""

    model_config = ConfigDict(frozen=True)

    label: str = ""
    start: str
    end: str

    @property
    def start_minute(self) -> Optional[int]:
        return parse_time_to_minutes(self.start)

    @property
    def end_minute(self) -> Optional[int]:
        return parse_time_to_minutes(self.end)


def default_market_windows() -> List[TradingWindow]:
    """A 股两个标准交易时段"""
    return [
        TradingWindow(label="上午", start="09:30", end="11:30"),
        TradingWindow(label="下午", start="13:00", end="15:00"),
    ]


class WatchConfig(BaseModel):
    """自选股配置，热加载时整体替换"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stocks: List[WatchedInstrument] = Field(default_factory=list)
    update_interval: int = Field(default=DEFAULT_UPDATE_INTERVAL_MS, alias="updateInterval")
    alert_threshold_percent: float = Field(
        default=DEFAULT_ALERT_THRESHOLD, alias="alertThresholdPercent"
    )
    market_windows: List[TradingWindow] = Field(
        default_factory=default_market_windows, alias="marketWindows"
    )

    @field_validator("update_interval", mode="before")
    @classmethod
    def _interval_default(cls, value: Any) -> Any:
        return DEFAULT_UPDATE_INTERVAL_MS if value in (None, 0, "") else value

    @field_validator("alert_threshold_percent", mode="before")
    @classmethod
    def _threshold_default(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_ALERT_THRESHOLD
        try:
            finite = math.isfinite(float(value))
        except (TypeError, ValueError):
            return value
        if not finite:
            logger.warning(f"提醒阈值 {value!r} 无效，使用默认值 {DEFAULT_ALERT_THRESHOLD:g}%")
            return DEFAULT_ALERT_THRESHOLD
        return value

    @field_validator("market_windows", mode="before")
    @classmethod
    def _windows_default(cls, value: Any) -> Any:
        if value is None:
            return default_market_windows()
        valid = []
        for item in value:
            window = item if isinstance(item, TradingWindow) else TradingWindow.model_validate(item)
            if window.start_minute is None or window.end_minute is None:
                logger.warning(f"交易时段格式错误，已忽略: {window.start}-{window.end}")
                continue
            valid.append(window)
        return valid

    def to_file_dict(self) -> Dict[str, Any]:
        """导出为 config.json 的字段格式"""
        return self.model_dump(mode="json", by_alias=True)
