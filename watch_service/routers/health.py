"""健康检查路由"""

import time

from fastapi import APIRouter, Request

from watch_service import __version__
from watch_service.db import check_health

router = APIRouter(tags=["健康检查"])


def _scheduler_status(scheduler) -> dict:
    if scheduler is None:
        return {"running": False}
    return {
        "running": True,
        "market_state": scheduler.state.value,
        "stocks": len(scheduler.config.stocks),
        "update_interval_ms": scheduler.config.update_interval,
        "last_updated": scheduler.last_updated.isoformat() if scheduler.last_updated else None,
        "timer_pending": scheduler.has_pending_timer,
    }


@router.get("/health")
async def health(request: Request):
    """调度器、日 K 缓存与记录存储状态"""
    history_cache = getattr(request.app.state, "history_cache", None)
    return {
        "success": True,
        "data": {
            "status": "ok",
            "service": "watchprice",
            "version": __version__,
            "timestamp": int(time.time()),
            "scheduler": _scheduler_status(getattr(request.app.state, "scheduler", None)),
            "history_cache": history_cache.stats() if history_cache else None,
            "storage": await check_health(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """调度器已启动即就绪"""
    return {"ready": getattr(request.app.state, "scheduler", None) is not None}
