"""
Layer 1 – 数据获取层
从多个行情数据源（新浪 / 腾讯 / Yahoo / 东方财富）拉取原始数据，
各自解析自己的返回格式，统一规范化后向上层提供标准接口。

所有数据源在边界内吞掉网络与解析错误，失败时返回 None，不做重试；
重试与回退由上层的 QuoteService / HistoryCache 负责。
"""

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from watch_service.config import settings
from watch_service.errors import UpstreamUnavailable
from watch_service.layers.processing import get_processing_layer
from watch_service.models.quote import Candle, Quote, compute_change_percent
from watch_service.models.watchlist import QuoteSourceName

logger = logging.getLogger(__name__)

_PAYLOAD_PATTERN = re.compile(r'="([^"]*)"')
_QUOTE_DOMESTIC = re.compile(r"^(sh|sz)", re.IGNORECASE)
_HISTORY_DOMESTIC = re.compile(r"^(sh|sz|hk)", re.IGNORECASE)
_US_TICKER = re.compile(r"^[A-Z]+$")


def is_domestic_quote_code(code: str) -> bool:
    """沪深 A 股代码（sh / sz 前缀）"""
    return bool(_QUOTE_DOMESTIC.match(code))


def is_domestic_market(code: str) -> bool:
    """国内市场代码（sh / sz / hk 前缀），可用东方财富日 K"""
    return bool(_HISTORY_DOMESTIC.match(code))


def is_us_ticker(code: str) -> bool:
    """美股代码（纯大写字母，如 AAPL）"""
    return bool(_US_TICKER.match(code))


def _num(value: Any) -> float:
    """非数字字段按 0 处理"""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    return num if math.isfinite(num) else 0.0


def _field(fields: List[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


def _build_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.UPSTREAM_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": "Mozilla/5.0 (watchprice)"},
    )


# ─────────────────────────────────────────────────────────
# 实时行情数据源
# ─────────────────────────────────────────────────────────

class QuoteSource:
    """实时行情数据源基类：fetch(code) → Quote | None"""

    name: str = ""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client
        self._proc = get_processing_layer()

    async def fetch(self, code: str) -> Optional[Quote]:
        try:
            response = await self._request(code)
            response.raise_for_status()
            return self._parse(code, response)
        except UpstreamUnavailable as exc:
            logger.warning(f"获取 {code} 数据失败 ({self.name}): {exc.reason}")
        except httpx.HTTPError as exc:
            logger.warning(f"获取 {code} 数据失败 ({self.name}): {exc!r}")
        except Exception as exc:
            logger.warning(f"解析 {code} 数据失败 ({self.name}): {exc!r}")
        return None

    async def _request(self, code: str) -> httpx.Response:
        raise NotImplementedError

    def _parse(self, code: str, response: httpx.Response) -> Quote:
        raise NotImplementedError

    def _split_payload(self, code: str, response: httpx.Response, sep: str, min_fields: int) -> List[str]:
        text = response.content.decode("gbk", errors="replace")
        match = _PAYLOAD_PATTERN.search(text)
        if not match or not match.group(1):
            raise UpstreamUnavailable(self.name, code, "返回内容中没有行情数据")
        fields = match.group(1).split(sep)
        if len(fields) < min_fields:
            raise UpstreamUnavailable(self.name, code, f"字段数量不足: {len(fields)}")
        return fields

    def _make_quote(
        self,
        code: str,
        name: str,
        current: float,
        previous_close: float,
        open_price: float,
        high: float,
        low: float,
        volume: float,
        as_of: Any,
    ) -> Quote:
        return Quote(
            code=code,
            name=name or code,
            source=self.name,
            current_price=current,
            previous_close=previous_close,
            open=open_price,
            high=high,
            low=low,
            volume=volume,
            change=round(current - previous_close, 4),
            change_percent=compute_change_percent(current, previous_close),
            as_of=self._proc.normalize_timestamp(as_of),
        )


class SinaQuoteSource(QuoteSource):
    """
    新浪财经（A 股），GBK 编码，逗号分隔

    var hq_str_sh600000="浦发银行,12.35,12.36,12.40,12.45,12.30,...,2024-01-01,15:00:00,00";
    """

    name = QuoteSourceName.SINA.value
    URL = "http://hq.sinajs.cn/list={code}"

    async def _request(self, code: str) -> httpx.Response:
        return await self._client.get(
            self.URL.format(code=code),
            headers={"Referer": "https://finance.sina.com.cn"},
        )

    def _parse(self, code: str, response: httpx.Response) -> Quote:
        fields = self._split_payload(code, response, ",", 4)
        date_part, time_part = _field(fields, 30), _field(fields, 31)
        return self._make_quote(
            code,
            name=fields[0],
            current=_num(fields[3]),
            previous_close=_num(fields[2]),
            open_price=_num(fields[1]),
            high=_num(_field(fields, 4)),
            low=_num(_field(fields, 5)),
            volume=_num(_field(fields, 8)),
            as_of=f"{date_part} {time_part}".strip(),
        )


class TencentQuoteSource(QuoteSource):
    """
    腾讯财经（A 股 / 港股 / 美股），GBK 编码，'~' 分隔

    v_sh600000="1~浦发银行~600000~12.40~12.35~12.36~12345678~...~20240101150000~...";
    """

    name = QuoteSourceName.TENCENT.value
    URL = "https://qt.gtimg.cn/q={code}"

    async def _request(self, code: str) -> httpx.Response:
        return await self._client.get(self.URL.format(code=code))

    def _parse(self, code: str, response: httpx.Response) -> Quote:
        fields = self._split_payload(code, response, "~", 5)
        return self._make_quote(
            code,
            name=fields[1],
            current=_num(fields[3]),
            previous_close=_num(fields[4]),
            open_price=_num(_field(fields, 5)),
            high=_num(_field(fields, 33)),
            low=_num(_field(fields, 34)),
            volume=_num(_field(fields, 6)),
            as_of=_field(fields, 30),
        )


class YahooQuoteSource(QuoteSource):
    """Yahoo Finance（美股），JSON chart 接口"""

    name = QuoteSourceName.YAHOO.value
    URL = "https://query1.finance.yahoo.com/v8/finance/chart/{code}"

    async def _request(self, code: str) -> httpx.Response:
        return await self._client.get(
            self.URL.format(code=code),
            params={"interval": "1m", "range": "1d"},
        )

    def _parse(self, code: str, response: httpx.Response) -> Quote:
        try:
            meta = response.json()["chart"]["result"][0]["meta"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise UpstreamUnavailable(self.name, code, "chart.result 为空")

        previous_close = _num(meta.get("previousClose") or meta.get("chartPreviousClose"))
        current = _num(meta.get("regularMarketPrice")) or previous_close
        if not current:
            raise UpstreamUnavailable(self.name, code, "缺少 regularMarketPrice")

        market_time = meta.get("regularMarketTime")
        as_of = (
            datetime.fromtimestamp(float(market_time), tz=timezone.utc)
            if isinstance(market_time, (int, float))
            else None
        )
        return self._make_quote(
            code,
            name=meta.get("shortName") or code,
            current=current,
            previous_close=previous_close,
            open_price=_num(meta.get("regularMarketOpen")) or previous_close,
            high=_num(meta.get("regularMarketDayHigh")) or current,
            low=_num(meta.get("regularMarketDayLow")) or current,
            volume=_num(meta.get("regularMarketVolume")),
            as_of=as_of,
        )


# ─────────────────────────────────────────────────────────
# 历史 K 线数据源
# ─────────────────────────────────────────────────────────

class HistorySource:
    """历史日 K 数据源基类：fetch(code) → List[Candle] | None"""

    name: str = ""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client
        self._proc = get_processing_layer()

    async def fetch(self, code: str) -> Optional[List[Candle]]:
        try:
            records = await self._fetch_records(code)
        except UpstreamUnavailable as exc:
            logger.warning(f"获取 {code} 日K 数据失败 ({self.name}): {exc.reason}")
            return None
        except httpx.HTTPError as exc:
            logger.warning(f"获取 {code} 日K 数据失败 ({self.name}): {exc!r}")
            return None
        except Exception as exc:
            logger.warning(f"解析 {code} 日K 数据失败 ({self.name}): {exc!r}")
            return None
        candles = self._proc.normalize_candles(records)
        return candles or None

    async def _fetch_records(self, code: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


def secid_for_code(code: str) -> Optional[str]:
    """sh600000 → 1.600000，sz000001 → 0.000001，hk00700 → 2.00700"""
    prefix, number = code[:2].lower(), code[2:]
    mapping = {"sh": "1", "sz": "0", "hk": "2"}
    if prefix not in mapping or not number:
        return None
    return f"{mapping[prefix]}.{number}"


class EastmoneyHistorySource(HistorySource):
    """东方财富日 K（国内市场），每行 'date,open,close,high,low,volume'"""

    name = "eastmoney"
    URL = "https://push2his.eastmoney.com/api/qt/stock/kline/get"

    def __init__(self, client: httpx.AsyncClient, limit: Optional[int] = None):
        super().__init__(client)
        self._limit = limit or settings.HISTORY_KLINE_LIMIT

    async def _fetch_records(self, code: str) -> List[Dict[str, Any]]:
        secid = secid_for_code(code)
        if not secid:
            raise UpstreamUnavailable(self.name, code, "无法映射 secid")
        response = await self._client.get(self.URL, params={
            "secid": secid,
            "fields1": "f1",
            "fields2": "f51,f52,f53,f54,f55,f56",
            "klt": "101",
            "fqt": "1",
            "beg": "0",
            "end": "20500000",
            "lmt": str(self._limit),
        })
        response.raise_for_status()
        data = (response.json() or {}).get("data") or {}
        klines = data.get("klines")
        if not isinstance(klines, list):
            raise UpstreamUnavailable(self.name, code, "klines 为空")

        records = []
        for line in klines:
            parts = str(line).split(",")
            if len(parts) < 6:
                continue
            date, open_price, close, high, low, volume = parts[:6]
            records.append({
                "time": date,
                "open": open_price,
                "high": high,
                "low": low,
                "close": close,
                "volume": volume,
            })
        return records


class YahooHistorySource(HistorySource):
    """Yahoo Finance 日 K（通用），默认取最近 3 个月"""

    name = "yahoo_history"
    URL = "https://query1.finance.yahoo.com/v8/finance/chart/{code}"

    def __init__(self, client: httpx.AsyncClient, period: str = "3mo"):
        super().__init__(client)
        self._period = period

    async def _fetch_records(self, code: str) -> List[Dict[str, Any]]:
        response = await self._client.get(
            self.URL.format(code=code),
            params={"interval": "1d", "range": self._period},
        )
        response.raise_for_status()
        try:
            result = response.json()["chart"]["result"][0]
            timestamps = result["timestamp"] or []
            quote = result["indicators"]["quote"][0]
        except (ValueError, KeyError, IndexError, TypeError):
            raise UpstreamUnavailable(self.name, code, "chart.result 为空")

        def _col(name: str, index: int) -> Any:
            values = quote.get(name) or []
            return values[index] if index < len(values) else None

        return [
            {
                "time": datetime.fromtimestamp(ts, tz=timezone.utc),
                "open": _col("open", i),
                "high": _col("high", i),
                "low": _col("low", i),
                "close": _col("close", i),
                "volume": _col("volume", i),
            }
            for i, ts in enumerate(timestamps)
        ]


# ─────────────────────────────────────────────────────────
# 获取层
# ─────────────────────────────────────────────────────────

class AcquisitionLayer:
    """数据获取层：持有各数据源实例与共享的 HTTP 客户端"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or _build_client()
        self.quote_sources: Dict[str, QuoteSource] = {
            QuoteSourceName.SINA.value: SinaQuoteSource(self._client),
            QuoteSourceName.TENCENT.value: TencentQuoteSource(self._client),
            QuoteSourceName.YAHOO.value: YahooQuoteSource(self._client),
        }
        self.domestic_history = EastmoneyHistorySource(self._client)
        self.generic_history = YahooHistorySource(self._client)

    async def fetch_quote(self, source: str, code: str) -> Optional[Quote]:
        adapter = self.quote_sources.get(source)
        if adapter is None:
            logger.warning(f"未知数据源: {source}")
            return None
        return await adapter.fetch(code)

    async def fetch_history(self, code: str) -> Optional[List[Candle]]:
        """国内代码优先东方财富，失败或非国内代码再走 Yahoo"""
        candles = None
        if is_domestic_market(code):
            candles = await self.domestic_history.fetch(code)
        if not candles:
            candles = await self.generic_history.fetch(code)
        return candles or None

    async def close(self) -> None:
        await self._client.aclose()
