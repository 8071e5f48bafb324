"""
Shared — Redis Pub/Sub へのイベント発行とログ設定

各サービスはコマンド処理の後にドメインイベントを自分のチャネル
(inventory_events / payment_events / saga_events) に発行する。

注意: Redis Pub/Sub は fire-and-forget 方式。
発行に失敗してもコマンド自体は確定済みなので、ログに残して続行する。
"""

import json
import logging
import os

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    if redis is None:
        return
    payload = {
        "event_type": type(event).__name__,
        "data": event.model_dump(mode="json"),
    }
    try:
        await redis.publish(channel, json.dumps(payload, default=str))
    except RedisError:
        logger.exception("Failed to publish %s to %s", payload["event_type"], channel)


def configure_logging(service: str) -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format=f"%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s",
    )
