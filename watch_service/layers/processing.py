"""
Layer 3 – 数据处理层
时间戳规范化、K 线清洗，以及把原始价格采样聚合成分时 K 线。
"""

import logging
import math
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo

import pandas as pd
from pydantic import BaseModel

from watch_service.config import settings
from watch_service.models.quote import Candle
from watch_service.models.timeseries import TimeseriesBucket

logger = logging.getLogger(__name__)

_COMPACT_TS = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})$")
_DEFAULT_LIMIT = 240


@lru_cache
def market_timezone() -> ZoneInfo:
    return ZoneInfo(settings.TZ)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def _to_int(value: Any) -> int:
    num = _to_float(value)
    return int(num) if num is not None else 0


class ProcessingLayer:
    """数据处理层：时间戳规范化 + K 线清洗 + 分时聚合"""

    # ── 时间戳 ────────────────────────────────────────────

    def parse_timestamp(self, value: Any) -> Optional[datetime]:
        """
        解析时间戳，返回带时区的 datetime；无法解析返回 None

        支持：datetime、ISO / 常见日期字符串、yyyyMMddHHmmss 紧凑格式、
        毫秒级 epoch 数值。不带时区的时间按市场时区解释。
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, pd.Timestamp):
            value = value.to_pydatetime()
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            if not math.isfinite(value):
                return None
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            parsed = self._parse_string(str(value).strip())
            if parsed is None:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=market_timezone())
        return parsed

    def _parse_string(self, text: str) -> Optional[datetime]:
        if not text:
            return None
        if not text.isdigit():
            try:
                return datetime.fromisoformat(text)
            except ValueError:
                pass
            parsed = pd.to_datetime(text, errors="coerce")
            if not pd.isna(parsed):
                return parsed.to_pydatetime()
        match = _COMPACT_TS.match(re.sub(r"\D+", "", text))
        if match:
            try:
                return datetime(*(int(part) for part in match.groups()))
            except ValueError:
                return None
        return None

    def normalize_timestamp(self, value: Any) -> datetime:
        """解析时间戳，无法解析时回退为当前时间"""
        parsed = self.parse_timestamp(value)
        return parsed if parsed is not None else datetime.now(tz=market_timezone())

    # ── K 线 ──────────────────────────────────────────────

    def normalize_candles(self, records: List[Dict[str, Any]]) -> List[Candle]:
        """
        将上游原始 K 线记录清洗为按时间升序的 Candle 列表

        标准列：time, open, high, low, close, volume；
        收盘价缺失或时间无法解析的行会被丢弃，重复时间保留最后一条。
        """
        if not records:
            return []

        df = pd.DataFrame(records)
        for col in ["time", "open", "high", "low", "close", "volume"]:
            if col not in df.columns:
                df[col] = None

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")

        df["time"] = [self.parse_timestamp(v) for v in df["time"]]
        df = df.dropna(subset=["time", "close"])
        if df.empty:
            return []

        df = df.drop_duplicates(subset=["time"], keep="last")
        df = df.sort_values("time", kind="mergesort").reset_index(drop=True)

        candles = []
        for row in df.to_dict(orient="records"):
            candles.append(Candle(
                time=row["time"],
                open=_to_float(row["open"]),
                high=_to_float(row["high"]),
                low=_to_float(row["low"]),
                close=_to_float(row["close"]),
                volume=_to_float(row["volume"]),
            ))
        return candles

    # ── 分时聚合 ──────────────────────────────────────────

    def aggregate(
        self,
        ticks: Iterable[Union[Mapping[str, Any], BaseModel]],
        interval_minutes: Any = 1,
        limit: Any = _DEFAULT_LIMIT,
    ) -> List[TimeseriesBucket]:
        """
        将原始价格采样按固定分钟数聚合为分时 K 线

        Args:
            ticks: 采样点 {timestamp, price, high, low, volume}，price 缺失时依次取 close / open
            interval_minutes: 每个窗口的分钟数（最小 1）
            limit: 最多返回最近的窗口数（最小 1）

        Returns:
            按时间升序的窗口列表；没有任何价格的窗口不输出
        """
        interval = max(1, _to_int(interval_minutes) or 1)
        limit = max(1, _to_int(limit) or _DEFAULT_LIMIT)
        bucket_ms = interval * 60 * 1000

        rows = []
        for tick in ticks or []:
            if isinstance(tick, BaseModel):
                tick = tick.model_dump()
            ts = self.parse_timestamp(tick.get("timestamp"))
            if ts is None:
                continue
            price = next(
                (p for p in (_to_float(tick.get(k)) for k in ("price", "close", "open")) if p is not None),
                None,
            )
            rows.append({
                "ts": int(ts.timestamp() * 1000),
                "price": price,
                "volume": _to_float(tick.get("volume")),
            })
        if not rows:
            return []

        df = pd.DataFrame(rows, columns=["ts", "price", "volume"])
        df["price"] = pd.to_numeric(df["price"], errors="coerce")
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce")
        df = df.sort_values("ts", kind="mergesort")
        df["bucket"] = (df["ts"] // bucket_ms) * bucket_ms

        grouped = df.groupby("bucket", sort=True).agg(
            open=("price", "first"),
            close=("price", "last"),
            high=("price", "max"),
            low=("price", "min"),
            avg_price=("price", "mean"),
            first_volume=("volume", "first"),
            last_volume=("volume", "last"),
        )
        grouped = grouped.dropna(subset=["close"]).tail(limit)

        result: List[TimeseriesBucket] = []
        prev_close: Optional[float] = None
        for bucket_start, row in grouped.iterrows():
            high, low, close = float(row["high"]), float(row["low"]), float(row["close"])

            volume = None
            if pd.notna(row["first_volume"]) and pd.notna(row["last_volume"]):
                volume = max(float(row["last_volume"]) - float(row["first_volume"]), 0.0)

            amplitude = round((high - low) / low * 100, 2) if low and high else None
            change_percent = (
                round((close - prev_close) / prev_close * 100, 2)
                if prev_close is not None and prev_close != 0
                else None
            )

            result.append(TimeseriesBucket(
                time=datetime.fromtimestamp(int(bucket_start) / 1000, tz=timezone.utc),
                open=float(row["open"]),
                high=high,
                low=low,
                close=close,
                avg_price=round(float(row["avg_price"]), 2),
                volume=volume,
                amplitude=amplitude,
                change_percent=change_percent,
            ))
            prev_close = close

        return result

    def buckets_to_csv(self, buckets: List[TimeseriesBucket]) -> str:
        """分时结果导出为 CSV 文本"""
        columns = list(TimeseriesBucket.model_fields)
        if not buckets:
            return pd.DataFrame(columns=columns).to_csv(index=False)
        df = pd.DataFrame([b.model_dump(mode="json") for b in buckets], columns=columns)
        return df.to_csv(index=False)


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
