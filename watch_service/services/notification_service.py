"""
桌面提醒服务
  - NotificationGate：涨跌幅阈值 + 与上次提醒值的差值过滤
  - 提醒通道：macOS osascript / 仅日志
"""

import asyncio
import json
import logging
import math
import sys
from typing import Dict, Optional, Tuple

from watch_service.config import settings
from watch_service.errors import NotificationError
from watch_service.layers.acquisition import is_us_ticker
from watch_service.models.quote import OscillatorSignal, Quote, TrendSignal
from watch_service.models.watchlist import WatchedInstrument

logger = logging.getLogger(__name__)

_SIGNAL_LABELS = {
    TrendSignal.BULLISH: "看涨",
    TrendSignal.BEARISH: "看跌",
    OscillatorSignal.OVERBOUGHT: "超买",
    OscillatorSignal.OVERSOLD: "超卖",
    OscillatorSignal.NEUTRAL: "正常",
}

_TREND_LABELS = {
    TrendSignal.BULLISH: "多头",
    TrendSignal.BEARISH: "空头",
    TrendSignal.RANGING: "震荡",
}


def signal_label(signal, trend: bool = False) -> str:
    if signal is None:
        return ""
    return (_TREND_LABELS if trend else _SIGNAL_LABELS).get(signal, str(signal))


class NotificationGate:
    """判断是否需要发送提醒，并记录每只股票上次提醒时的涨跌幅"""

    def __init__(self):
        self._last_alerted: Dict[str, float] = {}

    def should_alert(self, code: str, change_percent: Optional[float], threshold: Optional[float]) -> bool:
        try:
            threshold = float(threshold)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(threshold) or threshold <= 0:
            return False
        if change_percent is None:
            return False
        try:
            percent = float(change_percent)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(percent) or abs(percent) < threshold:
            return False

        last = self._last_alerted.get(code)
        if last is not None and abs(percent - last) < threshold:
            return False

        self._last_alerted[code] = percent
        return True

    def last_alerted(self, code: str) -> Optional[float]:
        return self._last_alerted.get(code)

    def reset(self, code: Optional[str] = None) -> None:
        if code is None:
            self._last_alerted.clear()
        else:
            self._last_alerted.pop(code, None)


def currency_for(code: str) -> str:
    return "$" if is_us_ticker(code) else "¥"


def format_alert(
    instrument: WatchedInstrument, quote: Quote, threshold: float
) -> Tuple[str, str, str]:
    """生成提醒的 (标题, 正文, 副标题)"""
    currency = currency_for(instrument.code)
    title = f"股票提醒：{quote.name or instrument.display_name}"
    sign = "+" if quote.change >= 0 else ""
    percent = f"{quote.change_percent:.2f}" if quote.change_percent is not None else "--"
    direction = "上涨" if quote.change >= 0 else "下跌"
    body = f"{currency}{quote.current_price:.2f} {sign}{percent}%（{direction}）"

    signal = ""
    if quote.indicators is not None:
        if quote.indicators.rsi is not None:
            signal = signal_label(quote.indicators.rsi.bias)
        elif quote.indicators.macd is not None:
            signal = signal_label(quote.indicators.macd.bias)
    subtitle = f"阈值：{threshold:g}% {signal}".rstrip()
    return title, body, subtitle


# ── 提醒通道 ──────────────────────────────────────────────

class LogNotifier:
    """只写日志的提醒通道（非 macOS 环境默认）"""

    async def notify(self, title: str, body: str, subtitle: str = "") -> None:
        logger.info(f"🔔 {title} | {body} | {subtitle}")


class OsascriptNotifier:
    """macOS 桌面通知"""

    def __init__(self, timeout: Optional[float] = None, sound: str = "Glass"):
        self._timeout = timeout if timeout is not None else settings.NOTIFY_TIMEOUT
        self._sound = sound

    def build_script(self, title: str, body: str, subtitle: str = "") -> str:
        return (
            f"display notification {json.dumps(body, ensure_ascii=False)} "
            f"with title {json.dumps(title, ensure_ascii=False)} "
            f"subtitle {json.dumps(subtitle, ensure_ascii=False)} "
            f"sound name {json.dumps(self._sound)}"
        )

    async def notify(self, title: str, body: str, subtitle: str = "") -> None:
        script = self.build_script(title, body, subtitle)
        try:
            proc = await asyncio.create_subprocess_exec(
                "osascript", "-e", script,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise NotificationError(f"osascript 无法执行: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            # 超时必须回收子进程
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
            raise NotificationError("osascript 超时") from exc
        if proc.returncode != 0:
            raise NotificationError(stderr.decode("utf-8", errors="replace").strip())


def build_notifier(kind: Optional[str] = None):
    """auto：macOS 使用 osascript，其他平台只写日志"""
    kind = (kind or settings.NOTIFIER).lower()
    if kind == "osascript" or (kind == "auto" and sys.platform == "darwin"):
        return OsascriptNotifier()
    return LogNotifier()
