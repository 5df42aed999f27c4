"""
分时聚合路由
GET  /api/timeseries/{code}   - 按持久化的行情记录聚合分时 K 线
POST /api/timeseries/aggregate - 对请求中的原始采样点做聚合
"""

from typing import List

from fastapi import APIRouter, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from watch_service.layers.processing import get_processing_layer
from watch_service.models.response import ApiResponse, TimeseriesPayload
from watch_service.models.timeseries import Tick
from watch_service.services.record_service import get_record_store

router = APIRouter(prefix="/api/timeseries", tags=["分时数据"])


class AggregateRequest(BaseModel):
    ticks: List[Tick] = Field(default_factory=list)
    interval: int = 1
    limit: int = 240


@router.get("/{code}")
async def get_timeseries(
    code: str,
    request: Request,
    interval: int = Query(default=1, ge=1, description="每个窗口的分钟数"),
    limit: int = Query(default=240, ge=1, le=5000, description="最多返回的窗口数"),
    format: str = Query(default="json", pattern="^(json|csv)$"),
):
    """读取最近的行情记录并聚合为分时 K 线"""
    store = getattr(request.app.state, "record_store", None) or get_record_store()
    rows = await store.recent(code.strip(), limit=max(limit * 6, 200))

    proc = get_processing_layer()
    series = proc.aggregate(rows, interval_minutes=interval, limit=limit)

    if format == "csv":
        return PlainTextResponse(proc.buckets_to_csv(series), media_type="text/csv")
    return ApiResponse.ok(data=TimeseriesPayload(
        code=code,
        interval_minutes=interval,
        limit=limit,
        data=series,
    ))


@router.post("/aggregate", response_model=ApiResponse)
async def aggregate_ticks(body: AggregateRequest):
    """对原始采样点做分时聚合"""
    series = get_processing_layer().aggregate(body.ticks, body.interval, body.limit)
    return ApiResponse.ok(data=[bucket.model_dump(mode="json") for bucket in series])
