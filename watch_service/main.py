"""
watchprice 行情监控服务
FastAPI 应用程序入口：启动时加载自选股配置并运行交易时段调度器

启动方式:
    uvicorn watch_service.main:app --host 0.0.0.0 --port 8002
    python -m watch_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from watch_service import __version__
from watch_service.config import ConfigWatcher, load_watch_config, settings
from watch_service.db import close_connections, init_mongodb
from watch_service.layers.acquisition import AcquisitionLayer
from watch_service.layers.analysis import get_analysis_layer
from watch_service.layers.cache import HistoryCache
from watch_service.routers import health, quotes, timeseries
from watch_service.services.notification_service import NotificationGate, build_notifier
from watch_service.services.quote_service import QuoteService
from watch_service.services.record_service import get_record_store
from watch_service.services.scheduler import TradingScheduler

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 watchprice 行情监控服务 v{__version__} 启动中")
    logger.info(f"   配置文件  : {settings.CONFIG_FILE}")
    logger.info(f"   时区      : {settings.TZ}")
    logger.info("=" * 60)

    # 初始配置读取失败（连默认配置都无法写入）时直接抛出，终止启动
    config = load_watch_config(settings.CONFIG_FILE)

    await init_mongodb()

    acquisition = AcquisitionLayer()
    history_cache = HistoryCache(acquisition.fetch_history)
    quote_service = QuoteService(acquisition, history_cache, get_analysis_layer())
    scheduler = TradingScheduler(
        quote_service,
        NotificationGate(),
        config,
        recorder=get_record_store(),
        notifier=build_notifier(),
    )
    watcher = ConfigWatcher(settings.CONFIG_FILE, scheduler.reload)

    app.state.scheduler = scheduler
    app.state.history_cache = history_cache
    app.state.record_store = get_record_store()

    scheduler.start()
    watcher.start()

    yield

    logger.info("🔄 行情监控服务正在关闭...")
    await watcher.stop()
    await scheduler.stop()
    await acquisition.close()
    await close_connections()
    logger.info("✅ 行情监控服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="watchprice 行情监控服务",
    description=(
        "自选股行情监控服务，提供以下功能：\n"
        "- 📊 多数据源实时行情（新浪 / 腾讯 / Yahoo），失败自动回退\n"
        "- 📈 技术指标（MACD / RSI / KDJ / DK）\n"
        "- 🔔 涨跌幅阈值桌面提醒\n"
        "- 🕘 按交易时段调度\n"
        "- 🧮 分时聚合查询\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从行情数据源拉取并解析原始数据\n"
        "Cache Layer        ← 日 K 内存缓存（TTL 1 小时）\n"
        "Processing Layer   ← 时间戳规范化、分时聚合\n"
        "Analysis Layer     ← 技术指标计算\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(quotes.router)
app.include_router(timeseries.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "watchprice",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "watch_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
