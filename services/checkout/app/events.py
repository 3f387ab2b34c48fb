"""
Checkout Service / イベント定義

コミット後に Redis Pub/Sub へ発行するイベント。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderLine(BaseModel):
    inventory_item_id: str
    sku: str
    quantity: int
    price_at_purchase: Decimal


class OrderCreated(BaseModel):
    """Checkout が成功して注文が永続化された"""
    order_id: str
    customer_name: str
    items: list[OrderLine]
    subtotal: Decimal
    discount_id: str | None
    discount_amount: Decimal
    total: Decimal
    created_by: str
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変わった"""
    order_id: str
    from_status: str
    to_status: str
    restocked: bool
    actor_id: str
    timestamp: datetime


class StockMovementRecorded(BaseModel):
    """在庫移動が記録された"""
    item_id: str
    delta: int
    kind: str
    related_order_id: str | None
    actor_id: str
    timestamp: datetime


class LowStockDetected(BaseModel):
    """在庫が閾値以下になった"""
    item_id: str
    sku: str
    name: str
    quantity: int
    threshold: int
    timestamp: datetime
