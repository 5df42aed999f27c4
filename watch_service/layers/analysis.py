"""
Layer 4 – 技术分析层
在日 K 序列上计算 MACD、RSI、KDJ 与 DK 多空指标，只取最新一根的值。
"""

import logging
import math
from typing import List, Optional

import pandas as pd

from watch_service.errors import IndicatorError
from watch_service.models.quote import (
    Candle,
    IndicatorSet,
    KdjIndicator,
    MacdIndicator,
    OscillatorSignal,
    RsiIndicator,
    TrendIndicator,
    TrendSignal,
)

logger = logging.getLogger(__name__)

MIN_CANDLES = 30


def _latest(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    value = float(series.iloc[-1])
    return value if math.isfinite(value) else None


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return None if value is None else round(value, digits)


def _oscillator(value: Optional[float], upper: float, lower: float) -> Optional[OscillatorSignal]:
    if value is None:
        return None
    if value > upper:
        return OscillatorSignal.OVERBOUGHT
    if value < lower:
        return OscillatorSignal.OVERSOLD
    return OscillatorSignal.NEUTRAL


class AnalysisLayer:
    """技术分析层：IndicatorEngine"""

    def to_frame(self, candles: List[Candle]) -> pd.DataFrame:
        """只保留 close / high / low 均为有效数字的 K 线"""
        if not candles:
            return pd.DataFrame(columns=["close", "high", "low"])
        df = pd.DataFrame(
            [{"close": c.close, "high": c.high, "low": c.low} for c in candles],
            columns=["close", "high", "low"],
        )
        for col in ["close", "high", "low"]:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df = df.replace([float("inf"), float("-inf")], float("nan"))
        return df.dropna().reset_index(drop=True)

    # ── MACD ──────────────────────────────────────────────

    def macd(
        self,
        df: pd.DataFrame,
        fast: int = 12,
        slow: int = 26,
        signal: int = 9,
    ) -> Optional[MacdIndicator]:
        """MACD（DIF、DEA、柱），柱 = DIF - DEA"""
        if len(df) < slow:
            return None
        ema_fast = df["close"].ewm(span=fast, adjust=False).mean()
        ema_slow = df["close"].ewm(span=slow, adjust=False).mean()
        dif = ema_fast - ema_slow
        dea = dif.ewm(span=signal, adjust=False).mean()
        macd_value, signal_value = _latest(dif), _latest(dea)
        if macd_value is None or signal_value is None:
            raise IndicatorError("MACD 结果不是有效数字")
        return MacdIndicator(
            macd=round(macd_value, 4),
            signal=round(signal_value, 4),
            histogram=round(macd_value - signal_value, 4),
            bias=TrendSignal.BULLISH if macd_value > signal_value else TrendSignal.BEARISH,
        )

    # ── RSI ───────────────────────────────────────────────

    def rsi(self, df: pd.DataFrame, period: int = 14) -> Optional[RsiIndicator]:
        """RSI（Wilder 平滑）"""
        if len(df) <= period:
            return None
        delta = df["close"].diff().dropna()
        gain = delta.clip(lower=0).ewm(alpha=1 / period, adjust=False).mean()
        loss = (-delta.clip(upper=0)).ewm(alpha=1 / period, adjust=False).mean()
        avg_gain, avg_loss = _latest(gain), _latest(loss)
        if avg_gain is None or avg_loss is None:
            raise IndicatorError("RSI 平均涨跌幅不是有效数字")
        if avg_loss == 0:
            value = 100.0 if avg_gain > 0 else 50.0
        else:
            value = 100 - 100 / (1 + avg_gain / avg_loss)
        return RsiIndicator(value=round(value, 2), bias=_oscillator(value, 70, 30))

    # ── KDJ ───────────────────────────────────────────────

    def kdj(self, df: pd.DataFrame, period: int = 9, signal: int = 3) -> Optional[KdjIndicator]:
        """KDJ 随机指标：K 为 period 根内的原始 %K，D 为 K 的 signal 根简单均线，超买超卖按 K 值判断"""
        if len(df) < period:
            return None
        low_min = df["low"].rolling(window=period, min_periods=1).min()
        high_max = df["high"].rolling(window=period, min_periods=1).max()
        denom = (high_max - low_min).replace(0, 1)
        rsv = (df["close"] - low_min) / denom * 100
        k = rsv
        d = k.rolling(window=signal, min_periods=1).mean()
        j = 3 * k - 2 * d
        k_value = _latest(k)
        return KdjIndicator(
            k=_round(k_value, 2),
            d=_round(_latest(d), 2),
            j=_round(_latest(j), 2),
            bias=_oscillator(k_value, 80, 20),
        )

    # ── DK 多空 ───────────────────────────────────────────

    def trend_bias(self, df: pd.DataFrame, window: int = 5, band: float = 2.0) -> Optional[TrendIndicator]:
        """最新收盘价相对近 window 根均价的偏离（%）"""
        if df.empty:
            return None
        closes = df["close"]
        average = float(closes.tail(window).mean())
        if average == 0:
            return None
        deviation = round((float(closes.iloc[-1]) - average) / average * 100, 2)
        if deviation > band:
            bias = TrendSignal.BULLISH
        elif deviation < -band:
            bias = TrendSignal.BEARISH
        else:
            bias = TrendSignal.RANGING
        return TrendIndicator(value=deviation, bias=bias)

    # ── 全量指标 ──────────────────────────────────────────

    def compute(self, candles: List[Candle]) -> Optional[IndicatorSet]:
        """
        计算全部指标

        有效 K 线不足 MIN_CANDLES 根时直接返回 None；
        单个指标出错只记录日志，不影响其他指标。
        """
        if not candles or len(candles) < MIN_CANDLES:
            return None
        df = self.to_frame(candles)
        if len(df) < MIN_CANDLES:
            return None

        result = IndicatorSet()
        for field, func in (
            ("macd", self.macd),
            ("rsi", self.rsi),
            ("kdj", self.kdj),
            ("trend", self.trend_bias),
        ):
            try:
                setattr(result, field, func(df))
            except IndicatorError as exc:
                logger.warning(f"{field.upper()} 跳过: {exc}")
            except Exception as exc:
                logger.error(f"{field.upper()} 计算错误: {exc}")

        return None if result.is_empty() else result


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
