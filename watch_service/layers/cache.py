"""
Layer 2 – 缓存层
日 K 历史数据的内存缓存：按股票代码缓存，TTL 过期后在读取时惰性淘汰。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from watch_service.config import settings
from watch_service.models.quote import Candle

logger = logging.getLogger(__name__)

HistoryFetcher = Callable[[str], Awaitable[Optional[List[Candle]]]]


@dataclass(frozen=True)
class HistoryCacheEntry:
    symbol: str
    candles: List[Candle]
    fetched_at: float


class HistoryCache:
    """按代码缓存日 K 序列，未命中时调用 fetcher 拉取"""

    def __init__(
        self,
        fetcher: HistoryFetcher,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._ttl = ttl if ttl is not None else settings.HISTORY_CACHE_TTL
        self._clock = clock
        self._entries: Dict[str, HistoryCacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._hits = 0
        self._misses = 0

    def get(self, symbol: str) -> Optional[List[Candle]]:
        """读取缓存，过期条目在此处删除"""
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at > self._ttl:
            del self._entries[symbol]
            logger.debug(f"日K 缓存过期: {symbol}")
            return None
        return entry.candles

    def set(self, symbol: str, candles: Optional[List[Candle]]) -> None:
        if not candles:
            return
        self._entries[symbol] = HistoryCacheEntry(symbol, list(candles), self._clock())

    async def get_or_fetch(self, symbol: str) -> Optional[List[Candle]]:
        """命中直接返回；未命中拉取并缓存（空结果视为失败，不缓存）"""
        cached = self.get(symbol)
        if cached is not None:
            self._hits += 1
            return cached

        lock = self._locks.setdefault(symbol, asyncio.Lock())
        async with lock:
            # 等锁期间其他请求可能已经写入
            cached = self.get(symbol)
            if cached is not None:
                self._hits += 1
                return cached

            self._misses += 1
            candles = await self._fetcher(symbol)
            if not candles:
                logger.debug(f"日K 数据不可用: {symbol}")
                return None
            self.set(symbol, candles)
            logger.debug(f"日K 缓存写入: {symbol}（{len(candles)} 条）")
            return self._entries[symbol].candles

    def invalidate(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._entries.clear()
        else:
            self._entries.pop(symbol, None)

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "ttl": self._ttl,
        }
