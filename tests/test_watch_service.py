"""
行情监控服务单元测试

覆盖范围：
  - 配置模块（服务配置、自选股配置默认值、默认配置写入、热加载）
  - 数据处理层（时间戳规范化、K 线清洗、分时聚合）
  - 技术分析层（MACD / RSI / KDJ / DK，样本不足、单指标失败隔离）
  - 日 K 缓存（命中、过期、空结果不缓存、并发去重）
  - 提醒过滤（阈值、差值去重、提醒文案）
  - 行情记录（时间戳规范化、本地文件降级存储）
  - FastAPI 路由（通过 TestClient 测试，无需真实数据库）
"""

import asyncio
import json
import math
import os
import sys
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

SHANGHAI = ZoneInfo("Asia/Shanghai")


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _rising_candles(n: int = 60, growth: float = 0.03) -> list:
    """单边上涨的日 K：收盘即最高价"""
    from watch_service.models.quote import Candle

    candles = []
    close = 10.0
    start = date(2024, 1, 1)
    for i in range(n):
        close = round(close * (1 + growth), 4)
        candles.append(Candle(
            time=datetime.combine(start + timedelta(days=i), datetime.min.time(), tzinfo=SHANGHAI),
            open=round(close * 0.99, 4),
            high=close,
            low=round(close * 0.97, 4),
            close=close,
            volume=100000 + i,
        ))
    return candles


def _ticks_two_minutes() -> list:
    return [
        {"timestamp": "2024-01-02T01:30:05+00:00", "price": 10.0, "volume": 1000},
        {"timestamp": "2024-01-02T01:30:40+00:00", "price": 10.1, "volume": 1500},
        {"timestamp": "2024-01-02T01:31:10+00:00", "price": 10.2, "volume": 2100},
        {"timestamp": "2024-01-02T01:31:50+00:00", "price": 10.3, "volume": 3000},
    ]


def _quote(change_percent=2.02, **overrides):
    from watch_service.models.quote import Quote

    data = dict(
        code="sh600000",
        name="浦发银行",
        source="tencent",
        current_price=12.60,
        previous_close=12.35,
        open=12.36,
        high=12.70,
        low=12.30,
        volume=123456,
        change=0.25,
        change_percent=change_percent,
        as_of=datetime(2024, 1, 2, 10, 0, tzinfo=SHANGHAI),
    )
    data.update(overrides)
    return Quote(**data)


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestSettings:
    def test_defaults(self):
        from watch_service.config import WatchServiceSettings
        s = WatchServiceSettings()
        assert s.UPSTREAM_TIMEOUT > 0
        assert s.HISTORY_CACHE_TTL == 3600
        assert s.TZ == "Asia/Shanghai"

    def test_mongo_uri_with_auth(self):
        from watch_service.config import WatchServiceSettings
        s = WatchServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="mydb",
        )
        assert "user:pass@db-host:27017/mydb" in s.MONGO_URI

    def test_docker_service_discovery(self):
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from watch_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"


class TestWatchConfig:
    def test_missing_fields_use_defaults(self):
        from watch_service.models.watchlist import WatchConfig
        cfg = WatchConfig.model_validate({"stocks": [{"name": "平安银行", "code": "sz000001"}]})
        assert cfg.alert_threshold_percent == 1
        assert cfg.update_interval == 5000
        assert [(w.start, w.end) for w in cfg.market_windows] == [("09:30", "11:30"), ("13:00", "15:00")]

    def test_explicit_empty_windows_stay_empty(self):
        from watch_service.models.watchlist import WatchConfig
        cfg = WatchConfig.model_validate({"stocks": [], "marketWindows": []})
        assert cfg.market_windows == []

    def test_invalid_window_dropped(self):
        from watch_service.models.watchlist import WatchConfig
        cfg = WatchConfig.model_validate({
            "marketWindows": [
                {"label": "坏", "start": "9点半", "end": "11:30"},
                {"label": "下午", "start": "13:00", "end": "15:00"},
            ]
        })
        assert len(cfg.market_windows) == 1
        assert cfg.market_windows[0].start_minute == 13 * 60
        assert cfg.market_windows[0].end_minute == 15 * 60

    def test_unknown_source_falls_back_to_auto(self):
        from watch_service.models.watchlist import QuoteSourceName, WatchedInstrument
        inst = WatchedInstrument(code="sh600000", source="bloomberg")
        assert inst.source == QuoteSourceName.AUTO
        assert inst.display_name == "sh600000"

    def test_file_dict_uses_aliases(self):
        from watch_service.config import default_watch_config
        data = default_watch_config().to_file_dict()
        assert set(data) == {"stocks", "updateInterval", "alertThresholdPercent", "marketWindows"}

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_threshold_uses_default(self, value):
        from watch_service.models.watchlist import WatchConfig
        cfg = WatchConfig.model_validate({"alertThresholdPercent": value})
        assert cfg.alert_threshold_percent == 1

    def test_nan_threshold_from_file(self, tmp_path):
        from watch_service.config import load_watch_config
        path = tmp_path / "config.json"
        path.write_text('{"stocks": [], "alertThresholdPercent": NaN}', encoding="utf-8")
        assert load_watch_config(str(path)).alert_threshold_percent == 1

    @pytest.mark.parametrize("text,expected", [
        ("00:00", 0),
        ("09:30", 570),
        ("23:59", 23 * 60 + 59),
        ("24:00", 24 * 60),
        ("24:59", None),
        ("25:00", None),
        ("12:60", None),
        ("9点半", None),
    ])
    def test_parse_time_to_minutes(self, text, expected):
        from watch_service.models.watchlist import parse_time_to_minutes
        assert parse_time_to_minutes(text) == expected

    def test_window_past_midnight_dropped(self):
        from watch_service.models.watchlist import WatchConfig
        cfg = WatchConfig.model_validate({
            "marketWindows": [{"label": "夜盘", "start": "21:00", "end": "24:59"}],
        })
        assert cfg.market_windows == []


class TestLoadWatchConfig:
    def test_missing_file_writes_default(self, tmp_path):
        from watch_service.config import load_watch_config
        path = tmp_path / "config.json"
        cfg = load_watch_config(str(path))
        assert [s.code for s in cfg.stocks] == ["sh600000", "sz000001"]
        assert path.exists()
        written = json.loads(path.read_text(encoding="utf-8"))
        assert written["alertThresholdPercent"] == 1
        assert len(written["marketWindows"]) == 2

    def test_invalid_json_falls_back_to_default(self, tmp_path):
        from watch_service.config import load_watch_config
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        cfg = load_watch_config(str(path))
        assert len(cfg.stocks) == 2

    def test_reads_existing_file(self, tmp_path):
        from watch_service.config import load_watch_config
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "stocks": [{"name": "Apple", "code": "AAPL", "source": "yahoo"}],
            "updateInterval": 10000,
            "alertThresholdPercent": 2.5,
        }), encoding="utf-8")
        cfg = load_watch_config(str(path))
        assert cfg.stocks[0].code == "AAPL"
        assert cfg.update_interval == 10000
        assert cfg.alert_threshold_percent == 2.5

    def test_unwritable_default_raises(self, tmp_path):
        from watch_service.config import load_watch_config
        from watch_service.errors import ConfigLoadError
        blocker = tmp_path / "blocker"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(ConfigLoadError):
            load_watch_config(str(blocker / "config.json"))


class TestConfigWatcher:
    def test_reload_on_mtime_change(self, tmp_path):
        from watch_service.config import ConfigWatcher, load_watch_config

        path = tmp_path / "config.json"
        load_watch_config(str(path))
        received = []
        watcher = ConfigWatcher(str(path), received.append, interval=0.01)

        assert asyncio.run(watcher.check_once()) is False

        path.write_text(json.dumps({
            "stocks": [{"name": "腾讯", "code": "hk00700"}],
            "alertThresholdPercent": 3,
        }), encoding="utf-8")
        future = os.stat(path).st_mtime + 10
        os.utime(path, (future, future))

        assert asyncio.run(watcher.check_once()) is True
        assert received[0].stocks[0].code == "hk00700"
        assert received[0].alert_threshold_percent == 3
        assert asyncio.run(watcher.check_once()) is False

    def test_async_callback_awaited(self, tmp_path):
        from watch_service.config import ConfigWatcher, load_watch_config

        path = tmp_path / "config.json"
        load_watch_config(str(path))
        received = []

        async def on_change(cfg):
            received.append(cfg)

        watcher = ConfigWatcher(str(path), on_change)
        future = os.stat(path).st_mtime + 10
        os.utime(path, (future, future))
        assert asyncio.run(watcher.check_once()) is True
        assert len(received) == 1


# ─────────────────────────────────────────────────────────
# 2. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestTimestamps:
    def setup_method(self):
        from watch_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_compact_digits(self):
        ts = self.proc.normalize_timestamp("20240102150000")
        assert ts == datetime(2024, 1, 2, 15, 0, tzinfo=SHANGHAI)

    def test_native_date_string(self):
        ts = self.proc.normalize_timestamp("2024-01-02 15:00:00")
        assert ts == datetime(2024, 1, 2, 15, 0, tzinfo=SHANGHAI)

    def test_iso_with_zone(self):
        ts = self.proc.normalize_timestamp("2024-01-02T07:00:00Z")
        assert ts == datetime(2024, 1, 2, 7, 0, tzinfo=timezone.utc)

    def test_epoch_millis(self):
        ts = self.proc.parse_timestamp(0)
        assert ts == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_unparseable_defaults_to_now(self):
        before = datetime.now(tz=timezone.utc)
        ts = self.proc.normalize_timestamp("不是时间")
        assert ts.tzinfo is not None
        assert abs((ts - before).total_seconds()) < 5

    def test_empty_defaults_to_now(self):
        assert self.proc.parse_timestamp("") is None
        assert self.proc.normalize_timestamp(None).tzinfo is not None


class TestNormalizeCandles:
    def setup_method(self):
        from watch_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_empty(self):
        assert self.proc.normalize_candles([]) == []

    def test_sorts_and_drops_bad_rows(self):
        records = [
            {"time": "2024-01-03", "open": "10.1", "high": "10.5", "low": "10.0", "close": "10.4", "volume": "100"},
            {"time": "2024-01-02", "open": "10.0", "high": "10.2", "low": "9.9", "close": "10.1", "volume": "90"},
            {"time": "2024-01-04", "open": "10.4", "high": "10.6", "low": "10.2", "close": None, "volume": "80"},
            {"time": "bad", "open": 1, "high": 1, "low": 1, "close": 1, "volume": 1},
        ]
        candles = self.proc.normalize_candles(records)
        assert [c.close for c in candles] == [10.1, 10.4]
        assert candles[0].time < candles[1].time

    def test_non_numeric_becomes_none(self):
        candles = self.proc.normalize_candles([
            {"time": "2024-01-02", "open": "-", "high": "10.2", "low": "9.9", "close": "10.1", "volume": "x"},
        ])
        assert candles[0].open is None
        assert candles[0].volume is None


class TestTimeseriesAggregation:
    def setup_method(self):
        from watch_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_two_minutes_two_buckets(self):
        buckets = self.proc.aggregate(_ticks_two_minutes(), interval_minutes=1, limit=240)
        assert len(buckets) == 2

        first, second = buckets
        assert (first.open, first.close, first.high, first.low) == (10.0, 10.1, 10.1, 10.0)
        assert first.volume == 500
        assert second.volume == 900
        assert first.change_percent is None
        assert second.change_percent == round((10.3 - 10.1) / 10.1 * 100, 2)
        assert first.avg_price == 10.05
        assert first.amplitude == round((10.1 - 10.0) / 10.0 * 100, 2)

    def test_strictly_ascending_time(self):
        ticks = list(reversed(_ticks_two_minutes())) + [
            {"timestamp": "2024-01-02T01:35:00+00:00", "price": 10.5, "volume": 3200},
        ]
        buckets = self.proc.aggregate(ticks, 1, 240)
        times = [b.time for b in buckets]
        assert all(a < b for a, b in zip(times, times[1:]))
        assert times[0] == datetime(2024, 1, 2, 1, 30, tzinfo=timezone.utc)

    def test_unsorted_input_uses_time_order_for_open_close(self):
        ticks = list(reversed(_ticks_two_minutes()))
        first = self.proc.aggregate(ticks, 1, 240)[0]
        assert first.open == 10.0
        assert first.close == 10.1

    def test_limit_keeps_most_recent(self):
        buckets = self.proc.aggregate(_ticks_two_minutes(), 1, 1)
        assert len(buckets) == 1
        assert buckets[0].close == 10.3
        # 截断后第一根没有前收盘
        assert buckets[0].change_percent is None

    def test_wider_interval_merges(self):
        buckets = self.proc.aggregate(_ticks_two_minutes(), interval_minutes=5, limit=240)
        assert len(buckets) == 1
        assert buckets[0].open == 10.0
        assert buckets[0].close == 10.3
        assert buckets[0].volume == 2000

    def test_bucket_without_price_dropped(self):
        ticks = _ticks_two_minutes() + [
            {"timestamp": "2024-01-02T01:40:00+00:00", "price": None, "volume": 4000},
        ]
        assert len(self.proc.aggregate(ticks, 1, 240)) == 2

    def test_price_falls_back_to_close(self):
        buckets = self.proc.aggregate([
            {"timestamp": "2024-01-02T01:30:00+00:00", "close": 9.5},
        ])
        assert buckets[0].close == 9.5
        assert buckets[0].volume is None

    def test_unparseable_timestamps_dropped(self):
        ticks = _ticks_two_minutes() + [{"timestamp": "???", "price": 99.0, "volume": 1}]
        buckets = self.proc.aggregate(ticks, 1, 240)
        assert max(b.high for b in buckets) == 10.3

    def test_decreasing_volume_clamped(self):
        buckets = self.proc.aggregate([
            {"timestamp": "2024-01-02T01:30:00+00:00", "price": 10.0, "volume": 500},
            {"timestamp": "2024-01-02T01:30:30+00:00", "price": 10.0, "volume": 100},
        ])
        assert buckets[0].volume == 0

    def test_invalid_options_use_minimums(self):
        buckets = self.proc.aggregate(_ticks_two_minutes(), interval_minutes=0, limit="abc")
        assert len(buckets) == 2

    def test_empty(self):
        assert self.proc.aggregate([]) == []

    def test_csv_export(self):
        csv_text = self.proc.buckets_to_csv(self.proc.aggregate(_ticks_two_minutes()))
        lines = csv_text.strip().splitlines()
        assert lines[0].startswith("time,open,high,low,close")
        assert len(lines) == 3


# ─────────────────────────────────────────────────────────
# 3. 技术分析层测试
# ─────────────────────────────────────────────────────────

class TestAnalysisLayer:
    def setup_method(self):
        from watch_service.layers.analysis import AnalysisLayer
        self.analysis = AnalysisLayer()

    @pytest.mark.parametrize("n", [0, 1, 10, 29])
    def test_below_minimum_returns_none(self, n):
        assert self.analysis.compute(_rising_candles(n)) is None

    def test_invalid_rows_count_against_minimum(self):
        from watch_service.models.quote import Candle
        candles = _rising_candles(30)
        candles[5] = Candle(time=candles[5].time, close=None, high=1.0, low=1.0)
        assert self.analysis.compute(candles) is None

    def test_rising_series_signals(self):
        from watch_service.models.quote import OscillatorSignal, TrendSignal
        result = self.analysis.compute(_rising_candles(60))

        assert result is not None
        assert result.macd.bias == TrendSignal.BULLISH
        assert result.macd.histogram == pytest.approx(result.macd.macd - result.macd.signal, abs=1e-3)
        assert result.rsi.value == 100.0
        assert result.rsi.bias == OscillatorSignal.OVERBOUGHT
        assert result.kdj.k > 80
        assert result.kdj.bias == OscillatorSignal.OVERBOUGHT
        assert result.trend.value > 2
        assert result.trend.bias == TrendSignal.BULLISH

    def test_falling_series_signals(self):
        from watch_service.models.quote import OscillatorSignal, TrendSignal
        result = self.analysis.compute(_rising_candles(60, growth=-0.03))
        assert result.rsi.value == 0.0
        assert result.rsi.bias == OscillatorSignal.OVERSOLD
        assert result.trend.bias == TrendSignal.BEARISH

    def test_flat_series_is_ranging(self):
        from watch_service.models.quote import TrendSignal
        result = self.analysis.compute(_rising_candles(40, growth=0.0))
        assert result.trend.value == 0
        assert result.trend.bias == TrendSignal.RANGING

    def test_rsi_in_range(self):
        import random
        from watch_service.models.quote import Candle
        rnd = random.Random(7)
        candles, close = [], 10.0
        for i in range(80):
            close = round(close * (1 + rnd.uniform(-0.03, 0.03)), 2)
            candles.append(Candle(
                time=datetime(2024, 1, 1, tzinfo=SHANGHAI) + timedelta(days=i),
                high=close * 1.01, low=close * 0.98, close=close,
            ))
        result = self.analysis.compute(candles)
        assert 0 <= result.rsi.value <= 100

    @pytest.mark.parametrize("error", ["value", "indicator"])
    def test_single_indicator_failure_isolated(self, error):
        from watch_service.errors import IndicatorError
        exc = ValueError("boom") if error == "value" else IndicatorError("MACD 结果不是有效数字")
        with patch.object(type(self.analysis), "macd", side_effect=exc):
            result = self.analysis.compute(_rising_candles(60))
        assert result is not None
        assert result.macd is None
        assert result.rsi is not None
        assert result.kdj is not None
        assert result.trend is not None

    def test_kdj_uses_raw_stochastic_k(self):
        """下跌后收盘价回到 9 日最高：原始 %K = 100，立即判为超买"""
        from watch_service.models.quote import Candle, OscillatorSignal
        start = datetime(2024, 1, 1, tzinfo=SHANGHAI)
        candles = []
        for i in range(29):
            close = round(20 - 0.2 * i, 2)
            candles.append(Candle(time=start + timedelta(days=i), high=close + 0.1, low=close - 0.1, close=close))
        nine_day_high = max(c.high for c in candles[-8:])
        candles.append(Candle(time=start + timedelta(days=29), high=nine_day_high, low=15.5, close=nine_day_high))

        kdj = self.analysis.compute(candles).kdj
        assert kdj.k == 100.0
        assert kdj.bias == OscillatorSignal.OVERBOUGHT
        # D 为最近 3 个 K 的简单均值，前两个 K 处于低位
        assert kdj.d < 50
        assert kdj.j == pytest.approx(3 * kdj.k - 2 * kdj.d, abs=0.02)

    def test_kdj_oversold_on_break_to_low(self):
        from watch_service.models.quote import Candle, OscillatorSignal
        start = datetime(2024, 1, 1, tzinfo=SHANGHAI)
        candles = [
            Candle(time=start + timedelta(days=i), high=10.5, low=9.5, close=10.4)
            for i in range(29)
        ]
        candles.append(Candle(time=start + timedelta(days=29), high=10.0, low=9.0, close=9.0))
        kdj = self.analysis.compute(candles).kdj
        assert kdj.k == 0.0
        assert kdj.bias == OscillatorSignal.OVERSOLD


# ─────────────────────────────────────────────────────────
# 4. 日 K 缓存测试
# ─────────────────────────────────────────────────────────

class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestHistoryCache:
    def _cache(self, result, ttl=3600):
        from watch_service.layers.cache import HistoryCache
        calls = []

        async def fetcher(code):
            calls.append(code)
            await asyncio.sleep(0.01)
            return result

        clock = _FakeClock()
        return HistoryCache(fetcher, ttl=ttl, clock=clock), calls, clock

    def test_hit_does_not_refetch(self):
        candles = _rising_candles(5)
        cache, calls, _ = self._cache(candles)

        async def run():
            first = await cache.get_or_fetch("sh600000")
            second = await cache.get_or_fetch("sh600000")
            return first, second

        first, second = asyncio.run(run())
        assert first == second == candles
        assert calls == ["sh600000"]
        assert cache.stats()["hits"] == 1

    def test_expired_entry_refetched(self):
        cache, calls, clock = self._cache(_rising_candles(5), ttl=3600)
        asyncio.run(cache.get_or_fetch("sh600000"))
        clock.now += 3601
        assert cache.get("sh600000") is None
        asyncio.run(cache.get_or_fetch("sh600000"))
        assert len(calls) == 2

    def test_empty_result_not_cached(self):
        cache, calls, _ = self._cache([])
        assert asyncio.run(cache.get_or_fetch("AAPL")) is None
        assert asyncio.run(cache.get_or_fetch("AAPL")) is None
        assert len(calls) == 2
        assert cache.stats()["entries"] == 0

    def test_concurrent_misses_share_one_fetch(self):
        cache, calls, _ = self._cache(_rising_candles(5))

        async def run():
            return await asyncio.gather(*(cache.get_or_fetch("sz000001") for _ in range(5)))

        results = asyncio.run(run())
        assert len(calls) == 1
        assert all(len(r) == 5 for r in results)

    def test_invalidate(self):
        cache, calls, _ = self._cache(_rising_candles(5))
        asyncio.run(cache.get_or_fetch("sh600000"))
        cache.invalidate("sh600000")
        asyncio.run(cache.get_or_fetch("sh600000"))
        assert len(calls) == 2


# ─────────────────────────────────────────────────────────
# 5. 提醒过滤测试
# ─────────────────────────────────────────────────────────

class TestNotificationGate:
    def setup_method(self):
        from watch_service.services.notification_service import NotificationGate
        self.gate = NotificationGate()

    def test_threshold_diff_scenario(self):
        assert self.gate.should_alert("sh600000", 2.0, 1) is True
        assert self.gate.should_alert("sh600000", 2.3, 1) is False
        assert self.gate.last_alerted("sh600000") == 2.0
        assert self.gate.should_alert("sh600000", 3.5, 1) is True
        assert self.gate.last_alerted("sh600000") == 3.5

    @pytest.mark.parametrize("percent", [0.0, 0.5, -0.99, 0.999])
    def test_below_threshold_never_alerts(self, percent):
        assert self.gate.should_alert("sh600000", percent, 1) is False
        assert self.gate.last_alerted("sh600000") is None

    @pytest.mark.parametrize("threshold", [0, -1, None, math.nan, math.inf, "abc"])
    def test_disabled_threshold(self, threshold):
        assert self.gate.should_alert("sh600000", 5.0, threshold) is False

    @pytest.mark.parametrize("percent", [None, math.nan, math.inf, -math.inf])
    def test_non_finite_percent(self, percent):
        assert self.gate.should_alert("sh600000", percent, 1) is False

    def test_reversal_alerts(self):
        assert self.gate.should_alert("sz000001", 2.0, 1) is True
        assert self.gate.should_alert("sz000001", -1.5, 1) is True

    def test_symbols_independent(self):
        assert self.gate.should_alert("sh600000", 2.0, 1) is True
        assert self.gate.should_alert("sz000001", 2.1, 1) is True

    def test_reset(self):
        self.gate.should_alert("sh600000", 2.0, 1)
        self.gate.reset()
        assert self.gate.should_alert("sh600000", 2.3, 1) is True


class TestAlertFormat:
    def test_domestic_rise(self):
        from watch_service.models.quote import IndicatorSet, OscillatorSignal, RsiIndicator
        from watch_service.models.watchlist import WatchedInstrument
        from watch_service.services.notification_service import format_alert

        quote = _quote(indicators=IndicatorSet(rsi=RsiIndicator(value=75.0, bias=OscillatorSignal.OVERBOUGHT)))
        title, body, subtitle = format_alert(WatchedInstrument(code="sh600000", name="浦发银行"), quote, 1)
        assert title == "股票提醒：浦发银行"
        assert body == "¥12.60 +2.02%（上涨）"
        assert subtitle == "阈值：1% 超买"

    def test_us_fall(self):
        from watch_service.models.watchlist import WatchedInstrument
        from watch_service.services.notification_service import format_alert

        quote = _quote(code="AAPL", name="Apple", current_price=180.0, change=-4.0, change_percent=-2.17)
        _, body, subtitle = format_alert(WatchedInstrument(code="AAPL"), quote, 1.5)
        assert body == "$180.00 -2.17%（下跌）"
        assert subtitle == "阈值：1.5%"

    def test_osascript_script(self):
        from watch_service.services.notification_service import OsascriptNotifier
        script = OsascriptNotifier().build_script("标题", 'a "b"', "副标题")
        assert script.startswith('display notification "a \\"b\\"" with title "标题"')
        assert script.endswith('sound name "Glass"')

    def test_build_notifier_log(self):
        from watch_service.services.notification_service import LogNotifier, build_notifier
        assert isinstance(build_notifier("log"), LogNotifier)

    @pytest.mark.skipif(sys.platform == "win32", reason="需要 POSIX shell")
    def test_osascript_timeout_reaps_child(self, tmp_path, monkeypatch):
        """osascript 卡住时：超时抛出 NotificationError，且子进程已被结束"""
        from watch_service.errors import NotificationError
        from watch_service.services.notification_service import OsascriptNotifier

        pid_file = tmp_path / "pid"
        fake = tmp_path / "osascript"
        fake.write_text(f'#!/bin/sh\necho $$ > "{pid_file}"\nexec sleep 30\n', encoding="utf-8")
        fake.chmod(0o755)
        monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")

        with pytest.raises(NotificationError):
            asyncio.run(OsascriptNotifier(timeout=0.5).notify("标题", "正文"))

        pid = int(pid_file.read_text().strip())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.skipif(sys.platform == "win32", reason="需要 POSIX shell")
    def test_osascript_failure_raises(self, tmp_path, monkeypatch):
        from watch_service.errors import NotificationError
        from watch_service.services.notification_service import OsascriptNotifier

        fake = tmp_path / "osascript"
        fake.write_text("#!/bin/sh\necho 'execution error' >&2\nexit 1\n", encoding="utf-8")
        fake.chmod(0o755)
        monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")

        with pytest.raises(NotificationError, match="execution error"):
            asyncio.run(OsascriptNotifier(timeout=5).notify("标题", "正文"))


# ─────────────────────────────────────────────────────────
# 6. 行情记录测试
# ─────────────────────────────────────────────────────────

class TestRecordStore:
    def test_build_price_record(self):
        from watch_service.models.quote import IndicatorSet, TrendIndicator, TrendSignal
        from watch_service.models.watchlist import WatchedInstrument
        from watch_service.services.record_service import build_price_record

        quote = _quote(indicators=IndicatorSet(trend=TrendIndicator(value=2.5, bias=TrendSignal.BULLISH)))
        record = build_price_record(WatchedInstrument(code="sh600000", name="浦发"), quote)
        assert record.timestamp == quote.as_of
        assert record.source == "tencent"
        assert record.price == 12.60
        assert json.loads(record.indicators) == {"trend": {"value": 2.5, "bias": "bullish"}}

    def test_record_without_indicators(self):
        from watch_service.models.watchlist import WatchedInstrument
        from watch_service.services.record_service import build_price_record

        record = build_price_record(WatchedInstrument(code="sh600000"), _quote(change_percent=None))
        assert record.indicators is None
        assert record.change_percent is None

    def test_file_fallback_insert_and_recent(self, tmp_path):
        from watch_service.models.watchlist import WatchedInstrument
        from watch_service.services.record_service import RecordStore, build_price_record

        store = RecordStore(str(tmp_path / "records.jsonl"))
        inst = WatchedInstrument(code="sh600000")

        async def run():
            for minute in range(3):
                quote = _quote(as_of=datetime(2024, 1, 2, 10, minute, tzinfo=SHANGHAI))
                await store.insert(build_price_record(inst, quote))
            await store.insert(build_price_record(WatchedInstrument(code="sz000001"), _quote(code="sz000001")))
            return await store.recent("sh600000", limit=2)

        rows = asyncio.run(run())
        assert len(rows) == 2
        assert rows[0]["timestamp"] > rows[1]["timestamp"]
        assert all(r["code"] == "sh600000" for r in rows)

    def test_recent_missing_file(self, tmp_path):
        from watch_service.services.record_service import RecordStore
        store = RecordStore(str(tmp_path / "none.jsonl"))
        assert asyncio.run(store.recent("sh600000")) == []


# ─────────────────────────────────────────────────────────
# 7. API 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from watch_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"})
        assert r.success is True
        assert r.error is None

    def test_fail(self):
        from watch_service.models.response import ApiResponse
        r = ApiResponse.fail(error="not found")
        assert r.success is False
        assert r.error == "not found"


# ─────────────────────────────────────────────────────────
# 8. HTTP 路由测试（TestClient，不需要真实数据库）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    """创建测试客户端：mock 数据库连接，不配置交易时段（调度器只会休市等待）"""
    from watch_service.models.watchlist import WatchConfig

    config = WatchConfig.model_validate({
        "stocks": [{"name": "浦发银行", "code": "sh600000"}],
        "marketWindows": [],
    })
    with patch("watch_service.main.init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch("watch_service.main.close_connections", new_callable=AsyncMock), \
         patch("watch_service.main.load_watch_config", return_value=config):
        from watch_service.main import app
        with TestClient(app) as c:
            yield c


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["history_cache"]["ttl"] == 3600
        assert body["data"]["scheduler"]["running"] is True
        assert body["data"]["scheduler"]["stocks"] == 1
        assert body["data"]["storage"]["records"]["backend"] == "file"

    def test_healthz_endpoint(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_readyz_endpoint(self, client):
        assert client.get("/readyz").json()["ready"] is True

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body


class TestQuoteRoutes:
    def test_latest_before_first_cycle(self, client):
        resp = client.get("/api/quotes/latest")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["quotes"] == []
        assert data["market_state"] in ("market_open", "market_closed")


class TestTimeseriesRoutes:
    def test_aggregate_post(self, client):
        resp = client.post("/api/timeseries/aggregate", json={
            "ticks": _ticks_two_minutes(),
            "interval": 1,
            "limit": 240,
        })
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert len(data) == 2
        assert data[1]["change_percent"] == round((10.3 - 10.1) / 10.1 * 100, 2)

    def test_timeseries_from_records(self, client, tmp_path):
        from watch_service.services.record_service import RecordStore

        path = tmp_path / "records.jsonl"
        with open(path, "w", encoding="utf-8") as fh:
            for tick in _ticks_two_minutes():
                fh.write(json.dumps({"code": "sh600000", **tick}) + "\n")

        original = client.app.state.record_store
        client.app.state.record_store = RecordStore(str(path))
        try:
            resp = client.get("/api/timeseries/sh600000", params={"interval": 1, "limit": 240})
            csv_resp = client.get("/api/timeseries/sh600000", params={"format": "csv"})
        finally:
            client.app.state.record_store = original

        assert resp.status_code == 200
        body = resp.json()["data"]
        assert body["code"] == "sh600000"
        assert [b["volume"] for b in body["data"]] == [500, 900]
        assert csv_resp.status_code == 200
        assert csv_resp.text.startswith("time,open")

    def test_invalid_format_rejected(self, client):
        resp = client.get("/api/timeseries/sh600000", params={"format": "xml"})
        assert resp.status_code == 422
