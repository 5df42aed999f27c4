"""
行情监控服务配置模块
  - 服务级配置：从环境变量 / .env 读取（pydantic-settings）
  - 自选股配置：config.json，支持轮询检测修改并热加载
"""

import asyncio
import json
import logging
import os
from functools import lru_cache
from typing import Awaitable, Callable, List, Optional, Union

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from watch_service.errors import ConfigLoadError
from watch_service.models.watchlist import (
    DEFAULT_ALERT_THRESHOLD,
    DEFAULT_UPDATE_INTERVAL_MS,
    WatchConfig,
    default_market_windows,
)

logger = logging.getLogger(__name__)


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


class WatchServiceSettings(BaseSettings):
    """行情监控服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 自选股配置文件 ─────────────────────────────────────
    CONFIG_FILE: str = Field(default="./config.json")
    CONFIG_POLL_INTERVAL: float = Field(default=2.0)   # 配置文件轮询间隔（秒）

    # ── 数据源配置 ─────────────────────────────────────────
    UPSTREAM_TIMEOUT: float = Field(default=10.0)      # 单次上游请求超时（秒）
    HISTORY_CACHE_TTL: int = Field(default=3600)       # 日 K 缓存 TTL（秒）
    HISTORY_KLINE_LIMIT: int = Field(default=120)      # 东方财富日 K 条数

    # ── 桌面提醒 ──────────────────────────────────────────
    NOTIFIER: str = Field(default="auto")              # auto / osascript / log
    NOTIFY_TIMEOUT: float = Field(default=5.0)

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="watchprice")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=False)
    MONGO_MAX_CONNECTIONS: int = Field(default=20)
    MONGO_MIN_CONNECTIONS: int = Field(default=1)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=10000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=20000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── 本地记录文件（MongoDB 不可用时的降级存储） ──────────
    RECORDS_FILE: str = Field(default="./watchprice.jsonl")

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Shanghai")           # 交易时段按该时区的本地时间判断


@lru_cache
def get_settings() -> WatchServiceSettings:
    """获取全局配置（单例）"""
    return WatchServiceSettings()


settings = get_settings()


# ── 自选股配置 ────────────────────────────────────────────

def default_watch_config() -> WatchConfig:
    """内置默认自选股配置"""
    return WatchConfig(
        stocks=[
            {"name": "浦发银行", "code": "sh600000", "source": "auto"},
            {"name": "平安银行", "code": "sz000001", "source": "auto"},
        ],
        updateInterval=DEFAULT_UPDATE_INTERVAL_MS,
        alertThresholdPercent=DEFAULT_ALERT_THRESHOLD,
        marketWindows=[w.model_dump() for w in default_market_windows()],
    )


def load_watch_config(path: Optional[str] = None) -> WatchConfig:
    """
    读取自选股配置

    文件不存在或内容无法解析时，写入并返回内置默认配置；
    连默认配置都无法写入时抛出 ConfigLoadError。
    """
    path = path or settings.CONFIG_FILE
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        return WatchConfig.model_validate(raw)
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning(f"读取配置文件失败，使用默认配置: {path} ({exc})")

    config = default_watch_config()
    try:
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(config.to_file_dict(), fh, ensure_ascii=False, indent=2)
        logger.info(f"已创建默认配置文件 {path}")
    except OSError as exc:
        raise ConfigLoadError(f"无法写入默认配置文件 {path}: {exc}") from exc
    return config


OnConfigChange = Callable[[WatchConfig], Union[None, Awaitable[None]]]


class ConfigWatcher:
    """轮询配置文件的修改时间，变化时重新加载并回调"""

    def __init__(
        self,
        path: str,
        on_change: OnConfigChange,
        interval: Optional[float] = None,
    ):
        self._path = path
        self._on_change = on_change
        self._interval = interval if interval is not None else settings.CONFIG_POLL_INTERVAL
        self._last_mtime = self._mtime()
        self._task: Optional[asyncio.Task] = None

    def _mtime(self) -> float:
        try:
            return os.stat(self._path).st_mtime
        except OSError:
            return 0.0

    async def check_once(self) -> bool:
        """检查一次文件是否被修改，修改则触发回调；返回是否触发"""
        mtime = self._mtime()
        if mtime <= self._last_mtime:
            return False
        self._last_mtime = mtime
        try:
            config = load_watch_config(self._path)
        except ConfigLoadError as exc:
            logger.error(f"重新读取配置失败: {exc}")
            return False
        logger.info(f"配置重新加载，股票数量：{len(config.stocks)}")
        result = self._on_change(config)
        if asyncio.iscoroutine(result):
            await result
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check_once()
            except Exception as exc:
                logger.error(f"配置热加载回调失败: {exc}", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
