"""
行情解析服务
按代码形态与配置选择数据源顺序，逐个尝试直到成功，
再通过日 K 缓存 + 技术分析层为行情附加技术指标。
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from watch_service.errors import InsufficientHistory
from watch_service.layers.acquisition import (
    AcquisitionLayer,
    is_domestic_quote_code,
    is_us_ticker,
)
from watch_service.layers.analysis import MIN_CANDLES, AnalysisLayer
from watch_service.layers.cache import HistoryCache
from watch_service.models.quote import Quote
from watch_service.models.watchlist import QuoteSourceName, WatchedInstrument

logger = logging.getLogger(__name__)


def route_sources(code: str, source: QuoteSourceName = QuoteSourceName.AUTO) -> List[str]:
    """
    数据源路由（纯函数）

    - 指定了数据源：只用该数据源，不回退
    - auto + 沪深代码：腾讯 → 新浪
    - auto + 美股代码：Yahoo
    - auto + 其他：腾讯
    """
    source = QuoteSourceName(source)
    if source != QuoteSourceName.AUTO:
        return [source.value]
    if is_domestic_quote_code(code):
        return [QuoteSourceName.TENCENT.value, QuoteSourceName.SINA.value]
    if is_us_ticker(code):
        return [QuoteSourceName.YAHOO.value]
    return [QuoteSourceName.TENCENT.value]


class QuoteService:
    """QuoteResolver：多数据源回退 + 技术指标附加"""

    def __init__(
        self,
        acquisition: AcquisitionLayer,
        history_cache: HistoryCache,
        analysis: AnalysisLayer,
    ):
        self._acq = acquisition
        self._history = history_cache
        self._analysis = analysis

    async def resolve(self, instrument: WatchedInstrument) -> Optional[Quote]:
        """获取单只股票行情；所有数据源都失败时返回 None"""
        quote = None
        for source in route_sources(instrument.code, instrument.source):
            quote = await self._acq.fetch_quote(source, instrument.code)
            if quote is not None:
                break
        if quote is None:
            logger.warning(f"{instrument.display_name}({instrument.code}) 所有数据源均不可用")
            return None

        try:
            return await self.attach_indicators(quote)
        except InsufficientHistory as exc:
            logger.debug(f"跳过技术指标: {exc}")
        except Exception as exc:
            # 技术指标获取失败不影响主功能
            logger.warning(f"获取 {instrument.code} 技术指标失败: {exc}")
        return quote

    async def attach_indicators(self, quote: Quote) -> Quote:
        """返回附加了 indicators 的新 Quote；历史数据不足时抛出 InsufficientHistory"""
        candles = await self._history.get_or_fetch(quote.code) or []
        indicators = self._analysis.compute(candles)
        if indicators is None:
            raise InsufficientHistory(quote.code, len(candles), MIN_CANDLES)
        return quote.model_copy(update={"indicators": indicators})

    async def resolve_all(
        self, instruments: Sequence[WatchedInstrument]
    ) -> List[Optional[Quote]]:
        """并发获取全部股票行情，结果顺序与输入一致，单只失败记为 None"""
        results = await asyncio.gather(
            *(self.resolve(instrument) for instrument in instruments),
            return_exceptions=True,
        )
        quotes: List[Optional[Quote]] = []
        for instrument, result in zip(instruments, results):
            if isinstance(result, BaseException):
                logger.error(f"获取 {instrument.code} 行情出错: {result!r}")
                quotes.append(None)
            else:
                quotes.append(result)
        return quotes
