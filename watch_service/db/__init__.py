"""
行情记录数据库
MongoDB（motor 异步驱动）保存每轮更新的 price_records；
未启用或连接失败时返回 None，由 RecordStore 降级写本地文件。
"""

import logging
from typing import Optional

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)

from watch_service.config import settings

logger = logging.getLogger(__name__)

PRICE_RECORDS = "price_records"

_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None


async def _ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    # 按代码查询最近记录
    await db[PRICE_RECORDS].create_index([("code", 1), ("timestamp", -1)])


async def init_mongodb() -> bool:
    """连接 MongoDB 并建索引，返回是否可用"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info(f"MongoDB 未启用，行情记录写入 {settings.RECORDS_FILE}")
        return False

    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
        minPoolSize=settings.MONGO_MIN_CONNECTIONS,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
        socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        tz_aware=True,
    )
    try:
        await client.admin.command("ping")
        db = client[settings.MONGODB_DATABASE]
        await _ensure_indexes(db)
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 不可用，行情记录降级写文件: {exc}")
        client.close()
        return False

    _mongo_client, _mongo_db = client, db
    logger.info(f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}/{settings.MONGODB_DATABASE}")
    return True


async def close_connections():
    global _mongo_client, _mongo_db
    if _mongo_client is None:
        return
    _mongo_client.close()
    _mongo_client = None
    _mongo_db = None
    logger.info("MongoDB 连接已关闭")


def get_price_records() -> Optional[AsyncIOMotorCollection]:
    """price_records 集合；MongoDB 不可用时为 None"""
    return _mongo_db[PRICE_RECORDS] if _mongo_db is not None else None


async def check_health() -> dict:
    """记录存储状态：mongodb 或本地文件"""
    if _mongo_client is None:
        status = "disconnected" if settings.MONGODB_ENABLED else "disabled"
        return {"records": {"backend": "file", "path": settings.RECORDS_FILE, "mongodb": status}}
    try:
        await _mongo_client.admin.command("ping")
        count = await _mongo_db[PRICE_RECORDS].estimated_document_count()
        return {"records": {"backend": "mongodb", "mongodb": "healthy", "count": count}}
    except Exception as exc:
        return {"records": {"backend": "mongodb", "mongodb": "unhealthy", "error": str(exc)}}
