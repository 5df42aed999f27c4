"""
行情记录服务
每次更新的行情追加写入存储：MongoDB（可用时） → 本地 JSON Lines 文件。
"""

import asyncio
import json
import logging
import os
from collections import deque
from typing import Any, Dict, List, Optional

from watch_service.config import settings
from watch_service.db import get_price_records
from watch_service.errors import PersistenceError
from watch_service.layers.processing import get_processing_layer
from watch_service.models.quote import PriceRecord, Quote
from watch_service.models.watchlist import WatchedInstrument

logger = logging.getLogger(__name__)


def build_price_record(instrument: WatchedInstrument, quote: Quote) -> PriceRecord:
    """由行情快照生成持久化记录，时间戳统一为带时区的绝对时间"""
    indicators = (
        quote.indicators.model_dump_json(exclude_none=True)
        if quote.indicators is not None
        else None
    )
    return PriceRecord(
        timestamp=get_processing_layer().normalize_timestamp(quote.as_of),
        code=instrument.code,
        name=quote.name or instrument.display_name,
        source=quote.source or instrument.source.value,
        price=quote.current_price,
        change=quote.change,
        change_percent=quote.change_percent,
        high=quote.high,
        low=quote.low,
        volume=quote.volume,
        indicators=indicators,
    )


class RecordStore:
    """追加写入的行情记录存储"""

    def __init__(self, path: Optional[str] = None):
        self._path = path or settings.RECORDS_FILE
        self._lock = asyncio.Lock()

    async def insert(self, record: PriceRecord) -> None:
        collection = get_price_records()
        if collection is not None:
            try:
                await collection.insert_one(record.model_dump())
                return
            except Exception as exc:
                logger.warning(f"MongoDB 写入失败，降级写文件: {exc}")

        try:
            line = record.model_dump_json() + "\n"
            async with self._lock:
                await asyncio.to_thread(self._append, line)
        except OSError as exc:
            raise PersistenceError(f"写入 {self._path} 失败: {exc}") from exc

    def _append(self, line: str) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as fh:
            fh.write(line)

    async def recent(self, code: str, limit: int = 200) -> List[Dict[str, Any]]:
        """最近的 limit 条记录（按时间倒序）"""
        collection = get_price_records()
        if collection is not None:
            try:
                cursor = (
                    collection
                    .find({"code": code}, {"_id": 0})
                    .sort("timestamp", -1)
                    .limit(limit)
                )
                return await cursor.to_list(length=limit)
            except Exception as exc:
                logger.warning(f"MongoDB 查询失败，降级读文件: {exc}")
        return await asyncio.to_thread(self._read_file, code, limit)

    def _read_file(self, code: str, limit: int) -> List[Dict[str, Any]]:
        if not os.path.exists(self._path):
            return []
        rows: deque = deque(maxlen=limit)
        with open(self._path, "r", encoding="utf-8") as fh:
            for line in fh:
                try:
                    row = json.loads(line)
                except ValueError:
                    continue
                if row.get("code") == code:
                    rows.append(row)
        return sorted(rows, key=lambda r: str(r.get("timestamp", "")), reverse=True)


# ── 模块级别单例 ──────────────────────────────────────────
_record_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    global _record_store
    if _record_store is None:
        _record_store = RecordStore()
    return _record_store
