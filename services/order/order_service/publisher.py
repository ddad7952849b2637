"""
Order Service — Redis Pub/Sub へのイベント発行

台帳への追記がコミットされた後に呼ぶ。発行は best-effort で、
Redis の障害で注文処理を失敗させない。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def publish(redis: aioredis.Redis | None, event: BaseModel) -> None:
    if redis is None:
        return
    message = json.dumps(
        {"event_type": type(event).__name__, "data": event.model_dump(mode="json")},
        default=str,
    )
    try:
        await redis.publish(CHANNEL, message)
    except (RedisError, OSError):
        logger.exception("Failed to publish %s", type(event).__name__)
