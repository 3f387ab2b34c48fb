"""
Checkout Service / コマンドハンドラ (Write 側)

Checkout 以外の状態変更。どのコマンドも 1 つの UnitOfWork で完結し、
コミット後にイベントを発行する。

キャンセル時の在庫:
  RESTOCK_ON_CANCEL が有効 (デフォルト) なら、注文のキャンセルと同じ
  トランザクションで全明細を Return として在庫に戻す。
  Refunded では自動で戻さない。返品された商品は実際に届いた時点で
  record_movement(kind=Return) で記録する。
"""

import logging
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from . import config
from .discounts import DiscountEngine
from .errors import IllegalTransition, NotFound, ValidationError
from .event_bus import ORDER_CHANNEL, EventBus, low_stock_event, movement_event
from .events import OrderStatusChanged
from .ledger import InventoryLedger
from .models import (
    Discount,
    DiscountCondition,
    DiscountType,
    InventoryItem,
    InventoryMovement,
    MovementKind,
    Order,
    OrderStatus,
)
from .repositories import UnitOfWork, run_with_retry
from .security import MANAGEMENT_ROLES, Actor
from .status import OrderStatusMachine

logger = logging.getLogger(__name__)


# ── Orders ───────────────────────────────────────


async def change_order_status(
    session_factory: sessionmaker,
    bus: EventBus,
    order_id: str,
    target: OrderStatus,
    actor: Actor,
    restock_on_cancel: bool | None = None,
    max_retries: int = config.CHECKOUT_MAX_RETRIES,
    retry_backoff: float = config.CHECKOUT_RETRY_BACKOFF,
) -> Order:
    """
    注文ステータス変更コマンド

    1. 状態遷移が許されているか確認 (IllegalTransition)
    2. 現在のステータスを条件に更新 (同時更新で追い越されたら IllegalTransition)
    3. キャンセルなら在庫を戻す (設定による)

    在庫は Checkout と同じく商品 ID 順に戻す。一時的な競合はリトライし、
    尽きたら Conflict。
    """
    actor.require(MANAGEMENT_ROLES, "change order status")
    if restock_on_cancel is None:
        restock_on_cancel = config.RESTOCK_ON_CANCEL

    previous, updated, events = await run_with_retry(
        lambda: _apply_status_change(session_factory, order_id, target, actor, restock_on_cancel),
        max_retries,
        retry_backoff,
        "Status change",
    )
    restocked = target is OrderStatus.CANCELLED and restock_on_cancel

    logger.info(
        "Order status changed: id=%s %s -> %s restocked=%s by=%s",
        order_id,
        previous.value,
        target.value,
        restocked,
        actor.id,
    )
    events.insert(
        0,
        (
            ORDER_CHANNEL,
            OrderStatusChanged(
                order_id=order_id,
                from_status=previous.value,
                to_status=target.value,
                restocked=restocked,
                actor_id=actor.id,
                timestamp=updated.updated_at,
            ),
        ),
    )
    await bus.publish_all(events)
    return updated


async def _apply_status_change(
    session_factory: sessionmaker,
    order_id: str,
    target: OrderStatus,
    actor: Actor,
    restock_on_cancel: bool,
) -> tuple[OrderStatus, Order, list]:
    events = []
    async with UnitOfWork(session_factory) as uow:
        order = await uow.orders.get(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        previous = order.status
        OrderStatusMachine().transition(previous, target)

        if not await uow.orders.compare_and_set_status(order_id, previous, target):
            current = await uow.orders.get(order_id)
            raise IllegalTransition(current.status.value, target.value)

        if target is OrderStatus.CANCELLED and restock_on_cancel:
            ledger = InventoryLedger(uow.items, uow.movements)
            for line in sorted(order.items, key=lambda i: i.inventory_item_id):
                movement = await ledger.increase_stock(
                    line.inventory_item_id,
                    line.quantity,
                    actor_id=actor.id,
                    kind=MovementKind.RETURN,
                    reason="Order cancelled",
                    related_order_id=order.id,
                )
                events.append(movement_event(movement))

        updated = await uow.orders.get(order_id)
    return previous, updated, events


# ── Inventory ────────────────────────────────────


async def add_inventory_item(
    session_factory: sessionmaker,
    actor: Actor,
    sku: str,
    name: str,
    price: Decimal,
    quantity: int = 0,
    threshold: int = 0,
    category: str = "",
    warranty_period: int | None = None,
) -> InventoryItem:
    actor.require(MANAGEMENT_ROLES, "add inventory items")
    async with UnitOfWork(session_factory) as uow:
        item = await InventoryLedger(uow.items, uow.movements).add_item(
            sku=sku,
            name=name,
            price=price,
            actor_id=actor.id,
            quantity=quantity,
            threshold=threshold,
            category=category,
            warranty_period=warranty_period,
        )
    logger.info("Inventory item added: id=%s sku=%s qty=%d", item.id, item.sku, item.quantity)
    return item


async def record_movement(
    session_factory: sessionmaker,
    bus: EventBus,
    actor: Actor,
    item_id: str,
    kind: MovementKind,
    quantity: int,
    reason: str | None = None,
) -> InventoryMovement:
    """
    手動の在庫移動 (入荷・調整・破損・期限切れ・返品)。
    StockOut は販売専用なので Checkout 以外からは記録できない。
    """
    actor.require(MANAGEMENT_ROLES, "record stock movements")
    if kind is MovementKind.STOCK_OUT:
        raise ValidationError("StockOut movements are recorded by checkout only")

    async with UnitOfWork(session_factory) as uow:
        ledger = InventoryLedger(uow.items, uow.movements)
        if kind.is_inbound:
            movement = await ledger.increase_stock(
                item_id, quantity, actor_id=actor.id, kind=kind, reason=reason
            )
        else:
            movement = await ledger.decrement_stock(
                item_id, quantity, actor_id=actor.id, kind=kind, reason=reason
            )

    logger.info(
        "Stock movement recorded: item=%s delta=%d kind=%s by=%s",
        item_id,
        movement.delta,
        kind.value,
        actor.id,
    )
    await bus.publish_all(
        [movement_event(movement)]
        + [low_stock_event(item, movement.created_at) for item in ledger.low_stock_alerts]
    )
    return movement


async def update_inventory_item(
    session_factory: sessionmaker,
    actor: Actor,
    item_id: str,
    name: str | None = None,
    sku: str | None = None,
    price: Decimal | None = None,
    threshold: int | None = None,
    category: str | None = None,
    warranty_period: int | None = None,
) -> InventoryItem:
    """商品情報の変更。在庫数はここでは変わらない。"""
    actor.require(MANAGEMENT_ROLES, "update inventory items")
    async with UnitOfWork(session_factory) as uow:
        item = await InventoryLedger(uow.items, uow.movements).update_item(
            item_id,
            name=name,
            sku=sku,
            price=price,
            threshold=threshold,
            category=category,
            warranty_period=warranty_period,
        )
    logger.info("Inventory item updated: id=%s sku=%s price=%s", item.id, item.sku, item.price)
    return item


# ── Discounts ────────────────────────────────────


async def create_discount(
    session_factory: sessionmaker,
    actor: Actor,
    code: str,
    type: DiscountType,
    value: Decimal,
    description: str = "",
    condition: DiscountCondition | None = None,
    is_active: bool = True,
) -> Discount:
    actor.require(MANAGEMENT_ROLES, "create discounts")
    async with UnitOfWork(session_factory) as uow:
        discount = await DiscountEngine(uow.discounts).create(
            code=code,
            type=type,
            value=value,
            created_by=actor.id,
            description=description,
            condition=condition,
            is_active=is_active,
        )
    logger.info("Discount created: code=%s type=%s value=%s", discount.code, type.value, value)
    return discount


async def deactivate_discount(
    session_factory: sessionmaker,
    actor: Actor,
    discount_id: str,
) -> Discount:
    actor.require(MANAGEMENT_ROLES, "deactivate discounts")
    async with UnitOfWork(session_factory) as uow:
        discount = await DiscountEngine(uow.discounts).deactivate(discount_id)
    logger.info("Discount deactivated: code=%s", discount.code)
    return discount


async def update_discount(
    session_factory: sessionmaker,
    actor: Actor,
    discount_id: str,
    **changes,
) -> Discount:
    """割引の変更。changes は DiscountEngine.update の引数。"""
    actor.require(MANAGEMENT_ROLES, "update discounts")
    async with UnitOfWork(session_factory) as uow:
        discount = await DiscountEngine(uow.discounts).update(discount_id, **changes)
    logger.info("Discount updated: code=%s fields=%s", discount.code, sorted(changes))
    return discount
