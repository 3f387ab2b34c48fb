"""
Checkout Service / Checkout オーケストレーター

カートを注文に変換する。在庫の減算・割引の使用・注文の作成を
1 つのトランザクション (UnitOfWork) の中で行い、すべて成功するか、
何も起きなかったかのどちらかにする。

  フロー:
  ┌──────────────────────────────────────────────────────────┐
  │  1. カートを検証 (空・数量 <= 0 は InvalidCart)            │
  │  2. 商品ごとに在庫を減算 (InsufficientStock で中断)        │
  │  3. 購入時点の価格をスナップショットして小計を計算         │
  │  4. 割引コードを検証 → 使用回数を確保 (失敗で中断)         │
  │  5. 注文と明細を Processing で保存                         │
  │  6. コミット → イベント発行 → 注文を返す                   │
  │                                                          │
  │  2〜5 のどこで失敗してもロールバックされ、在庫減算も       │
  │  割引の使用も残らない。                                    │
  └──────────────────────────────────────────────────────────┘

同時実行:
  在庫と割引使用回数は条件付き UPDATE で更新するので売り越し・上限超過は
  起きない。ロック待ちのタイムアウトやデッドロック、直列化失敗などの
  一時的な競合は、新しいトランザクションで最大 max_retries 回やり直し、
  それでも駄目なら Conflict を送出する。

  呼び出し側がタイムアウトでタスクをキャンセルした場合も、UnitOfWork が
  ロールバックするので中途半端な在庫減算は残らない。

在庫不足の報告:
  在庫は商品 ID の昇順に減算するので、InsufficientStock が報告するのは
  ID 順で最初に足りなかった商品で、カート上で最初の行とは限らない。
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from . import config
from .discounts import DiscountEngine
from .errors import DiscountError, InvalidCart, NotFound, ValidationError
from .event_bus import ORDER_CHANNEL, EventBus, low_stock_event, movement_event
from .events import OrderCreated, OrderLine
from .ledger import InventoryLedger
from .models import (
    CartItem,
    Customer,
    MovementKind,
    Order,
    OrderItem,
    to_money,
)
from .repositories import UnitOfWork, run_with_retry, utcnow
from .security import STAFF_ROLES, Actor
from .status import INITIAL_STATUS

logger = logging.getLogger(__name__)


def merge_cart(cart: Iterable[CartItem]) -> dict[str, int]:
    """
    カートを検証し、同じ商品の行を合算する。
    戻り値の順序はカートで最初に現れた順。
    """
    lines: dict[str, int] = {}
    for entry in cart:
        if not entry.inventory_item_id:
            raise InvalidCart("Cart item is missing inventory_item_id")
        if entry.quantity <= 0:
            raise InvalidCart(
                "Cart quantities must be positive",
                inventory_item_id=entry.inventory_item_id,
                quantity=entry.quantity,
            )
        lines[entry.inventory_item_id] = lines.get(entry.inventory_item_id, 0) + entry.quantity
    if not lines:
        raise InvalidCart("Cart is empty")
    return lines


class CheckoutOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        event_bus: EventBus,
        max_retries: int = config.CHECKOUT_MAX_RETRIES,
        retry_backoff: float = config.CHECKOUT_RETRY_BACKOFF,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.clock = clock

    async def checkout(
        self,
        actor: Actor,
        customer: Customer,
        cart: list[CartItem],
        discount_code: str | None = None,
    ) -> Order:
        actor.require(STAFF_ROLES, "place orders")
        lines = merge_cart(cart)
        if not customer.name.strip():
            raise ValidationError("Customer name is required", field="customer.name")
        discount_code = discount_code.strip() if discount_code else None

        order, events = await run_with_retry(
            lambda: self._attempt(actor, customer, lines, discount_code),
            self.max_retries,
            self.retry_backoff,
            "Checkout",
        )

        logger.info(
            "Order created: id=%s items=%d total=%s discount=%s by=%s",
            order.id,
            len(order.items),
            order.total,
            order.discount_id,
            actor.id,
        )
        await self.event_bus.publish_all(events)
        return order

    async def _attempt(
        self,
        actor: Actor,
        customer: Customer,
        lines: dict[str, int],
        discount_code: str | None,
    ) -> tuple[Order, list]:
        order_id = str(uuid.uuid4())
        now = self.clock()
        events: list = []

        async with UnitOfWork(self.session_factory) as uow:
            ledger = InventoryLedger(uow.items, uow.movements)
            engine = DiscountEngine(uow.discounts, clock=self.clock)

            # ── Step 2: 在庫を減算 ──────────────────────
            # ロック順を揃えるため商品 ID 順に減算する
            for item_id in sorted(lines):
                movement = await ledger.decrement_stock(
                    item_id,
                    lines[item_id],
                    actor_id=actor.id,
                    kind=MovementKind.STOCK_OUT,
                    related_order_id=order_id,
                    reason="Sale",
                )
                events.append(movement_event(movement))
            events.extend(low_stock_event(item, now) for item in ledger.low_stock_alerts)

            # ── Step 3: 価格をスナップショット ──────────
            order_items: list[OrderItem] = []
            for item_id, quantity in lines.items():
                item = await uow.items.get(item_id)
                if item is None:
                    raise NotFound("InventoryItem", item_id)
                order_items.append(
                    OrderItem(
                        inventory_item_id=item.id,
                        name=item.name,
                        sku=item.sku,
                        quantity=quantity,
                        price_at_purchase=item.price,
                    )
                )
            subtotal = to_money(sum((i.line_total for i in order_items), start=to_money(0)))

            # ── Step 4: 割引を検証して使用回数を確保 ────
            discount_id = None
            discount_amount = to_money(0)
            if discount_code:
                item_count = sum(lines.values())
                quote = await engine.validate(discount_code, subtotal, item_count)
                if not await engine.reserve_use(quote.discount.id):
                    raise DiscountError(DiscountError.USAGE_LIMIT_REACHED, discount_code)
                discount_id = quote.discount.id
                discount_amount = quote.discount_amount

            # ── Step 5: 注文を保存 ──────────────────────
            order = Order(
                id=order_id,
                customer=customer,
                items=tuple(order_items),
                subtotal=subtotal,
                discount_id=discount_id,
                discount_amount=discount_amount,
                total=to_money(subtotal - discount_amount),
                status=INITIAL_STATUS,
                created_by=actor.id,
                created_at=now,
                updated_at=now,
            )
            await uow.orders.add(order)

        events.insert(0, (ORDER_CHANNEL, order_created_event(order)))
        return order, events


def order_created_event(order: Order) -> OrderCreated:
    return OrderCreated(
        order_id=order.id,
        customer_name=order.customer.name,
        items=[
            OrderLine(
                inventory_item_id=i.inventory_item_id,
                sku=i.sku,
                quantity=i.quantity,
                price_at_purchase=i.price_at_purchase,
            )
            for i in order.items
        ],
        subtotal=order.subtotal,
        discount_id=order.discount_id,
        discount_amount=order.discount_amount,
        total=order.total,
        created_by=order.created_by,
        timestamp=order.created_at,
    )
