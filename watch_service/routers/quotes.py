"""
实时行情路由
GET /api/quotes/latest   - 最近一轮更新的行情
"""

from fastapi import APIRouter, HTTPException, Request, status

from watch_service.models.response import ApiResponse, LatestQuotesPayload

router = APIRouter(prefix="/api/quotes", tags=["实时行情"])


@router.get("/latest", response_model=ApiResponse)
async def latest_quotes(request: Request):
    """最近一轮更新的全部自选股行情（休市期间为空）"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="调度器未启动")
    return ApiResponse.ok(data=LatestQuotesPayload(
        market_state=scheduler.state.value,
        updated_at=scheduler.last_updated,
        quotes=list(scheduler.snapshot()),
    ))
