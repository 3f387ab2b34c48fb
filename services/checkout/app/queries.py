"""
Checkout Service / クエリハンドラ (Read 側)

状態を変更しない読み取り。レスポンス用の dict に変換して返す。
"""

from decimal import Decimal

from .discounts import DiscountEngine
from .errors import DiscountError, NotFound
from .ledger import InventoryLedger
from .models import Discount, InventoryItem, InventoryMovement, Order, OrderStatus
from .repositories import UnitOfWork


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


# ── Serializers ──────────────────────────────────


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "customer": {
            "name": order.customer.name,
            "contact": order.customer.contact,
            "address": order.customer.address,
            "email": order.customer.email,
        },
        "items": [
            {
                "inventory_item_id": i.inventory_item_id,
                "name": i.name,
                "sku": i.sku,
                "quantity": i.quantity,
                "price_at_purchase": _money(i.price_at_purchase),
            }
            for i in order.items
        ],
        "subtotal": _money(order.subtotal),
        "discountId": order.discount_id,
        "discountAmount": _money(order.discount_amount),
        "total": _money(order.total),
        "status": order.status.value,
        "createdAt": order.created_at.isoformat(),
        "updatedAt": order.updated_at.isoformat(),
        "createdBy": order.created_by,
    }


def item_to_dict(item: InventoryItem) -> dict:
    return {
        "id": item.id,
        "sku": item.sku,
        "name": item.name,
        "category": item.category,
        "price": _money(item.price),
        "quantity": item.quantity,
        "threshold": item.threshold,
        "warrantyPeriod": item.warranty_period,
        "createdAt": item.created_at.isoformat(),
        "updatedAt": item.updated_at.isoformat(),
    }


def movement_to_dict(movement: InventoryMovement) -> dict:
    return {
        "id": movement.id,
        "itemId": movement.item_id,
        "type": movement.kind.value,
        "quantityChange": movement.delta,
        "reason": movement.reason,
        "relatedOrderId": movement.related_order_id,
        "userId": movement.actor_id,
        "timestamp": movement.created_at.isoformat(),
    }


def discount_to_dict(discount: Discount) -> dict:
    cond = discount.condition
    return {
        "id": discount.id,
        "code": discount.code,
        "description": discount.description,
        "type": discount.type.value,
        "value": _money(discount.value),
        "condition": {
            "minSpend": _money(cond.min_spend),
            "minItems": cond.min_items,
            "maxUsage": cond.max_usage,
            "validUntil": cond.valid_until.isoformat() if cond.valid_until else None,
        },
        "isActive": discount.is_active,
        "usedCount": discount.used_count,
        "createdAt": discount.created_at.isoformat(),
        "createdBy": discount.created_by,
    }


# ── Orders ───────────────────────────────────────


async def get_order(uow: UnitOfWork, order_id: str) -> dict | None:
    order = await uow.orders.get(order_id)
    return order_to_dict(order) if order else None


async def list_orders(uow: UnitOfWork, status: OrderStatus | None = None) -> list[dict]:
    """全注文を新しい順に返す。status を指定するとそのステータスだけ。"""
    return [order_to_dict(o) for o in await uow.orders.list_all(status)]


# ── Inventory ────────────────────────────────────


async def list_low_stock(uow: UnitOfWork, threshold: int | None = None) -> list[dict]:
    ledger = InventoryLedger(uow.items, uow.movements)
    return [item_to_dict(item) async for item in ledger.low_stock(threshold)]


async def list_movements(uow: UnitOfWork, item_id: str) -> list[dict]:
    """在庫移動履歴 (古い順)"""
    ledger = InventoryLedger(uow.items, uow.movements)
    return [movement_to_dict(m) for m in await ledger.movements_for(item_id)]


async def reconcile_item(uow: UnitOfWork, item_id: str) -> dict:
    report = await InventoryLedger(uow.items, uow.movements).reconcile(item_id)
    return {
        "itemId": report.item_id,
        "quantity": report.quantity,
        "movementTotal": report.movement_total,
        "balanced": report.balanced,
    }


async def get_item(uow: UnitOfWork, item_id: str) -> dict:
    item = await uow.items.get(item_id)
    if item is None:
        raise NotFound("InventoryItem", item_id)
    return item_to_dict(item)


async def stock_summary(uow: UnitOfWork) -> dict:
    summary = await uow.items.stock_summary()
    return {
        "totalItems": summary["total_items"],
        "totalValue": _money(summary["total_value"]),
        "lowStockItems": summary["low_stock_items"],
        "outOfStockItems": summary["out_of_stock_items"],
    }


# ── Discounts ────────────────────────────────────


async def validate_discount(
    uow: UnitOfWork,
    code: str,
    cart_total: Decimal,
    item_count: int,
) -> dict:
    """
    カート画面のプレビュー用。使用回数は確保しないので、
    ここで有効でも Checkout 時に UsageLimitReached になることはある。
    """
    try:
        quote = await DiscountEngine(uow.discounts).validate(code, cart_total, item_count)
    except DiscountError as e:
        return {"isValid": False, "reason": e.reason, "message": e.message}
    return {
        "isValid": True,
        "discount": discount_to_dict(quote.discount),
        "discountAmount": _money(quote.discount_amount),
    }


async def list_active_discounts(uow: UnitOfWork) -> list[dict]:
    return [discount_to_dict(d) for d in await DiscountEngine(uow.discounts).active_discounts()]


async def list_discounts(uow: UnitOfWork) -> list[dict]:
    """無効化済みも含めたすべての割引 (管理画面用)"""
    return [discount_to_dict(d) for d in await DiscountEngine(uow.discounts).all_discounts()]


async def get_discount(uow: UnitOfWork, discount_id: str) -> dict:
    return discount_to_dict(await DiscountEngine(uow.discounts).get(discount_id))


async def discount_stats(uow: UnitOfWork) -> dict:
    stats = await DiscountEngine(uow.discounts).stats()
    return {
        "totalDiscounts": stats["total_discounts"],
        "activeDiscounts": stats["active_discounts"],
        "totalUsage": stats["total_usage"],
    }
