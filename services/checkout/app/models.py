"""
Checkout Service / ドメインモデル

リポジトリが返す不変のレコード。ストレージの行 (db.py) とは別物で、
変更はすべてリポジトリ経由で行う。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """金額を Decimal の 2 桁 (セント単位) に丸める。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


# ── Inventory ────────────────────────────────────


class MovementKind(str, Enum):
    STOCK_IN = "StockIn"
    STOCK_OUT = "StockOut"
    ADJUSTMENT_IN = "AdjustmentIn"
    ADJUSTMENT_OUT = "AdjustmentOut"
    DAMAGE = "Damage"
    EXPIRED = "Expired"
    RETURN = "Return"

    @property
    def is_inbound(self) -> bool:
        return self in INBOUND_KINDS


INBOUND_KINDS = frozenset(
    {MovementKind.STOCK_IN, MovementKind.ADJUSTMENT_IN, MovementKind.RETURN}
)


@dataclass(frozen=True, slots=True)
class InventoryItem:
    id: str
    sku: str
    name: str
    category: str
    price: Decimal
    quantity: int
    threshold: int
    warranty_period: int | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.threshold


@dataclass(frozen=True, slots=True)
class InventoryMovement:
    id: int
    item_id: str
    delta: int
    kind: MovementKind
    reason: str | None
    related_order_id: str | None
    actor_id: str
    created_at: datetime


# ── Discounts ────────────────────────────────────


class DiscountType(str, Enum):
    PERCENTAGE = "Percentage"
    FIXED_AMOUNT = "FixedAmount"


@dataclass(frozen=True, slots=True)
class DiscountCondition:
    min_spend: Decimal | None = None
    min_items: int | None = None
    max_usage: int | None = None
    valid_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class Discount:
    id: str
    code: str
    description: str
    type: DiscountType
    value: Decimal
    condition: DiscountCondition
    is_active: bool
    used_count: int
    created_at: datetime
    created_by: str

    def amount_for(self, subtotal: Decimal) -> Decimal:
        """小計に対する割引額。合計がマイナスにならないよう小計で頭打ちにする。"""
        if self.type is DiscountType.PERCENTAGE:
            amount = subtotal * self.value / Decimal(100)
        else:
            amount = self.value
        return to_money(min(amount, subtotal))


# ── Orders ───────────────────────────────────────


class OrderStatus(str, Enum):
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


@dataclass(frozen=True, slots=True)
class Customer:
    name: str
    contact: str = ""
    address: str = ""
    email: str = ""


@dataclass(frozen=True, slots=True)
class CartItem:
    """クライアント側で保持されるカートの 1 行。永続化はしない。"""

    inventory_item_id: str
    quantity: int


@dataclass(frozen=True, slots=True)
class OrderItem:
    inventory_item_id: str
    name: str
    sku: str
    quantity: int
    price_at_purchase: Decimal

    @property
    def line_total(self) -> Decimal:
        return to_money(self.price_at_purchase * self.quantity)


@dataclass(frozen=True, slots=True)
class Order:
    id: str
    customer: Customer
    items: tuple[OrderItem, ...]
    subtotal: Decimal
    discount_id: str | None
    discount_amount: Decimal
    total: Decimal
    status: OrderStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
