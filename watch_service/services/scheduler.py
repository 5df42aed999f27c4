"""
交易时段调度服务
按配置的交易时段驱动行情更新：开市时每 update_interval 毫秒更新一次，
休市时计算到下一个交易时段开始的等待时间。任意时刻最多只有一个待触发的定时器。
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence

from watch_service.layers.processing import market_timezone
from watch_service.models.quote import Quote
from watch_service.models.watchlist import WatchConfig, WatchedInstrument
from watch_service.services.notification_service import (
    NotificationGate,
    currency_for,
    format_alert,
    signal_label,
)
from watch_service.services.quote_service import QuoteService
from watch_service.services.record_service import RecordStore, build_price_record

logger = logging.getLogger(__name__)

MIN_DELAY_MS = 1000
NO_WINDOW_RETRY_MS = 5 * 60 * 1000
_DAY_MINUTES = 24 * 60


class MarketState(str, Enum):
    MARKET_OPEN = "market_open"
    MARKET_CLOSED = "market_closed"


def _minute_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


def is_trading_open(config: WatchConfig, now: datetime) -> bool:
    """当前分钟落在任一交易时段 [start, end) 内即为开市"""
    minutes = _minute_of_day(now)
    for window in config.market_windows:
        start, end = window.start_minute, window.end_minute
        if start is None or end is None:
            continue
        if start <= minutes < end:
            return True
    return False


def millis_until_next_window(config: WatchConfig, now: datetime) -> int:
    """距离下一个交易时段开始的毫秒数；未配置任何时段时固定 5 分钟后重试"""
    starts = sorted(
        w.start_minute for w in config.market_windows
        if w.start_minute is not None and w.end_minute is not None
    )
    if not starts:
        return NO_WINDOW_RETRY_MS

    current = _minute_of_day(now)
    elapsed_ms = now.second * 1000 + now.microsecond // 1000

    for start in starts:
        if current < start:
            return (start - current) * 60 * 1000 - elapsed_ms

    until_midnight = (_DAY_MINUTES - current) * 60 * 1000 - elapsed_ms
    return until_midnight + starts[0] * 60 * 1000


def format_quote_info(instrument: WatchedInstrument, quote: Optional[Quote]) -> str:
    """控制台输出格式"""
    if quote is None:
        return f"❌ {instrument.display_name}: 获取失败"

    currency = currency_for(instrument.code)
    trend_icon = "📈" if quote.change >= 0 else "📉"
    color = "🟢" if quote.change >= 0 else "🔴"
    sign = "+" if quote.change >= 0 else ""
    percent = f"{quote.change_percent:.2f}" if quote.change_percent is not None else "--"

    lines = [
        f"{trend_icon} {quote.name} ({instrument.code})",
        f"  当前价格: {currency}{quote.current_price:.2f}",
        f"  涨跌: {color} {sign}{quote.change:.2f} ({percent}%)",
        f"  今开: {currency}{quote.open:.2f} | 昨收: {currency}{quote.previous_close:.2f}",
        f"  最高: {currency}{quote.high:.2f} | 最低: {currency}{quote.low:.2f}",
        f"  成交量: {quote.volume / 10000:.2f}万",
        f"  更新时间: {quote.as_of:%Y-%m-%d %H:%M:%S}",
    ]
    ind = quote.indicators
    if ind is not None:
        lines.append("  ───────────────────────────────")
        if ind.macd:
            lines.append(
                f"  📊 MACD: {ind.macd.macd} | 信号: {ind.macd.signal} | "
                f"柱状图: {ind.macd.histogram} | {signal_label(ind.macd.bias)}"
            )
        if ind.rsi:
            lines.append(f"  📈 RSI: {ind.rsi.value} | {signal_label(ind.rsi.bias)}")
        if ind.kdj:
            lines.append(
                f"  📉 KDJ: K={ind.kdj.k} D={ind.kdj.d} J={ind.kdj.j} | {signal_label(ind.kdj.bias)}"
            )
        if ind.trend:
            lines.append(f"  🔄 DK: {ind.trend.value}% | {signal_label(ind.trend.bias, trend=True)}")
    return "\n".join(lines)


class TradingScheduler:
    """
    行情更新调度器

    状态：MARKET_OPEN（执行一轮更新后按 update_interval 重新定时）/
         MARKET_CLOSED（定时到下一个交易时段开始）。
    每次定时前先取消尚未触发的定时器；reload() 替换配置并尽快重新触发，
    但不会打断正在进行的一轮更新。
    """

    def __init__(
        self,
        quote_service: QuoteService,
        gate: NotificationGate,
        config: WatchConfig,
        recorder: Optional[RecordStore] = None,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._quotes = quote_service
        self._gate = gate
        self._config = config
        self._recorder = recorder
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(tz=market_timezone()))

        self._timer: Optional[asyncio.TimerHandle] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._retick_pending = False
        self.state = MarketState.MARKET_CLOSED
        self.last_instruments: List[WatchedInstrument] = []
        self.last_quotes: List[Optional[Quote]] = []
        self.last_updated: Optional[datetime] = None

    @property
    def config(self) -> WatchConfig:
        return self._config

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def is_ticking(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    # ── 定时器 ────────────────────────────────────────────

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def schedule_next(self, delay_ms: float) -> None:
        """取消已有定时器并重新定时（最小 MIN_DELAY_MS）"""
        self._cancel_timer()
        delay = max(delay_ms, MIN_DELAY_MS) / 1000
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.is_ticking:
            self._retick_pending = True
            return
        self._tick_task = asyncio.create_task(self.tick())

    # ── 生命周期 ──────────────────────────────────────────

    def start(self) -> None:
        logger.info(f"📊 监控股票数量: {len(self._config.stocks)}")
        logger.info(f"⏱️  更新间隔: {self._config.update_interval / 1000:g}秒")
        logger.info(f"🔔 价格提醒阈值: {self._config.alert_threshold_percent:g}%")
        self.schedule_next(0)

    def reload(self, config: WatchConfig) -> None:
        """替换配置并尽快重新触发"""
        self._config = config
        if self.is_ticking:
            self._retick_pending = True
        else:
            self.schedule_next(0)

    async def stop(self) -> None:
        self._cancel_timer()
        if self.is_ticking:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
        self._tick_task = None

    # ── 调度 ──────────────────────────────────────────────

    async def tick(self) -> None:
        config = self._config
        now = self._clock()

        if not is_trading_open(config, now):
            self.state = MarketState.MARKET_CLOSED
            wait = millis_until_next_window(config, now)
            logger.info(f"🌙 休市中，{round(wait / 1000 / 60)} 分钟后尝试恢复")
            self._rearm(wait)
            return

        self.state = MarketState.MARKET_OPEN
        try:
            await self.run_cycle(config)
        except Exception as exc:
            logger.error(f"行情更新出错: {exc}", exc_info=True)
        self._rearm(config.update_interval)

    def _rearm(self, delay_ms: float) -> None:
        if self._retick_pending:
            self._retick_pending = False
            delay_ms = 0
        self.schedule_next(delay_ms)

    async def run_cycle(self, config: WatchConfig) -> List[Optional[Quote]]:
        """并发更新全部股票，输出、记录并按阈值提醒"""
        instruments = list(config.stocks)
        logger.info(f"🔄 {self._clock():%Y-%m-%d %H:%M:%S} - 更新价格信息...")

        quotes = await self._quotes.resolve_all(instruments)
        for instrument, quote in zip(instruments, quotes):
            logger.info(format_quote_info(instrument, quote))
            if quote is None:
                continue
            await self._persist(instrument, quote)
            if self._gate.should_alert(instrument.code, quote.change_percent, config.alert_threshold_percent):
                await self._alert(instrument, quote, config.alert_threshold_percent)

        self.last_instruments = instruments
        self.last_quotes = quotes
        self.last_updated = self._clock()
        return quotes

    async def _persist(self, instrument: WatchedInstrument, quote: Quote) -> None:
        if self._recorder is None:
            return
        try:
            await self._recorder.insert(build_price_record(instrument, quote))
        except Exception as exc:
            logger.error(f"行情记录写入失败 ({instrument.code}): {exc}")

    async def _alert(self, instrument: WatchedInstrument, quote: Quote, threshold: float) -> None:
        if self._notifier is None:
            return
        title, body, subtitle = format_alert(instrument, quote, threshold)
        try:
            await self._notifier.notify(title, body, subtitle)
        except Exception as exc:
            logger.error(f"桌面通知失败：{exc}")

    def snapshot(self) -> Sequence[dict]:
        """最近一轮行情（供 HTTP 查询）"""
        result = []
        for instrument, quote in zip(self.last_instruments, self.last_quotes):
            result.append({
                "code": instrument.code,
                "name": instrument.display_name,
                "quote": quote.model_dump(mode="json") if quote is not None else None,
            })
        return result
