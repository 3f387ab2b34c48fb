"""
Checkout Service / イベント発行

Redis Pub/Sub でドメインイベントを他サービス (ダッシュボード、通知など) へ流す。
発行はトランザクションのコミット後に行う。Pub/Sub は fire-and-forget なので、
発行に失敗してもコミット済みの注文や在庫変更は取り消さない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .events import LowStockDetected, StockMovementRecorded
from .models import InventoryItem, InventoryMovement

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"


class EventBus:
    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        if self.redis is None:
            logger.debug("No Redis connection; dropping %s", type(event).__name__)
            return
        payload = json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            }
        )
        try:
            await self.redis.publish(channel, payload)
        except RedisError:
            logger.exception("Failed to publish %s to %s", type(event).__name__, channel)

    async def publish_all(self, events: list[tuple[str, BaseModel]]) -> None:
        for channel, event in events:
            await self.publish(channel, event)


def movement_event(movement: InventoryMovement) -> tuple[str, StockMovementRecorded]:
    return INVENTORY_CHANNEL, StockMovementRecorded(
        item_id=movement.item_id,
        delta=movement.delta,
        kind=movement.kind.value,
        related_order_id=movement.related_order_id,
        actor_id=movement.actor_id,
        timestamp=movement.created_at,
    )


def low_stock_event(item: InventoryItem, timestamp: datetime) -> tuple[str, LowStockDetected]:
    return INVENTORY_CHANNEL, LowStockDetected(
        item_id=item.id,
        sku=item.sku,
        name=item.name,
        quantity=item.quantity,
        threshold=item.threshold,
        timestamp=timestamp,
    )
