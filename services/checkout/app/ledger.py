"""
Checkout Service / 在庫台帳 (Inventory Ledger)

InventoryItem.quantity と在庫移動履歴を書き換える唯一の入口。
数量を変えるときは必ず移動履歴を 1 行追記するので、どの商品でも

    quantity == sum(movement.delta)

が成り立つ。商品は数量 0 で作成し、初期在庫も StockIn として記録する。

台帳は呼び出し側の UnitOfWork の中で動く。コミット・ロールバックは
呼び出し側 (CheckoutOrchestrator など) が決める。

減算で在庫が閾値以下になった商品は low_stock_alerts に溜まる。
呼び出し側はコミット後にそれを LowStockDetected として発行する。
"""

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from decimal import Decimal

from .errors import DuplicateSku, InsufficientStock, NotFound, ValidationError
from .models import InventoryItem, InventoryMovement, MovementKind, to_money
from .repositories import ItemRepository, MovementRepository, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reconciliation:
    item_id: str
    quantity: int
    movement_total: int

    @property
    def balanced(self) -> bool:
        return self.quantity == self.movement_total


class InventoryLedger:
    def __init__(self, items: ItemRepository, movements: MovementRepository) -> None:
        self.items = items
        self.movements = movements
        self.low_stock_alerts: list[InventoryItem] = []

    async def add_item(
        self,
        sku: str,
        name: str,
        price: Decimal,
        actor_id: str,
        quantity: int = 0,
        threshold: int = 0,
        category: str = "",
        warranty_period: int | None = None,
    ) -> InventoryItem:
        """商品を登録する。SKU は一意。初期在庫は StockIn の移動として記録する。"""
        if not sku or not name:
            raise ValidationError("Name and SKU are required")
        if quantity < 0 or threshold < 0:
            raise ValidationError("Quantity and threshold must not be negative")
        if price < 0:
            raise ValidationError("Price must not be negative")
        if await self.items.get_by_sku(sku):
            raise DuplicateSku(sku)

        now = utcnow()
        item = InventoryItem(
            id=str(uuid.uuid4()),
            sku=sku,
            name=name,
            category=category,
            price=to_money(price),
            quantity=0,
            threshold=threshold,
            warranty_period=warranty_period,
            created_at=now,
            updated_at=now,
        )
        await self.items.add(item)
        if quantity > 0:
            await self.increase_stock(
                item.id, quantity, actor_id=actor_id, reason="Initial stock"
            )
        return await self.items.get(item.id)

    async def update_item(
        self,
        item_id: str,
        name: str | None = None,
        sku: str | None = None,
        price: Decimal | None = None,
        threshold: int | None = None,
        category: str | None = None,
        warranty_period: int | None = None,
    ) -> InventoryItem:
        """
        商品の属性を変更する。在庫数は変更できない (移動として記録すること)。
        価格の変更は既存の注文明細 (price_at_purchase) には影響しない。
        """
        values = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Name must not be empty")
            values["name"] = name
        if sku is not None:
            if not sku.strip():
                raise ValidationError("SKU must not be empty")
            existing = await self.items.get_by_sku(sku)
            if existing and existing.id != item_id:
                raise DuplicateSku(sku)
            values["sku"] = sku
        if price is not None:
            if price < 0:
                raise ValidationError("Price must not be negative")
            values["price"] = to_money(price)
        if threshold is not None:
            if threshold < 0:
                raise ValidationError("Threshold must not be negative")
            values["threshold"] = threshold
        if category is not None:
            values["category"] = category
        if warranty_period is not None:
            values["warranty_period"] = warranty_period

        if values:
            updated = await self.items.update_details(item_id, values)
        else:
            updated = await self.items.get(item_id) is not None
        if not updated:
            raise NotFound("InventoryItem", item_id)
        return await self.items.get(item_id)

    async def decrement_stock(
        self,
        item_id: str,
        quantity: int,
        actor_id: str,
        kind: MovementKind = MovementKind.STOCK_OUT,
        related_order_id: str | None = None,
        reason: str | None = None,
    ) -> InventoryMovement:
        """
        在庫を減らす。

        「在庫 >= 要求数」の確認と減算は 1 文の条件付き UPDATE で行うため、
        同じ商品への同時の減算と競合しても売り越しは起きない。
        足りなければ InsufficientStock を送出し、何も変更しない。
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", quantity=quantity)
        if kind.is_inbound:
            raise ValidationError(f"{kind.value} cannot decrease stock", kind=kind.value)

        if not await self.items.try_decrement(item_id, quantity):
            item = await self.items.get(item_id)
            if item is None:
                raise NotFound("InventoryItem", item_id)
            raise InsufficientStock(item_id, available=item.quantity, requested=quantity)

        movement = await self.movements.append(
            item_id,
            -quantity,
            kind,
            actor_id,
            reason=reason,
            related_order_id=related_order_id,
        )
        logger.debug("Stock decremented: item=%s qty=%d kind=%s", item_id, quantity, kind.value)

        item = await self.items.get(item_id)
        if item.is_low_stock:
            logger.warning(
                "Low stock alert: %s (SKU: %s) quantity=%d threshold=%d",
                item.name,
                item.sku,
                item.quantity,
                item.threshold,
            )
            self.low_stock_alerts.append(item)
        return movement

    async def increase_stock(
        self,
        item_id: str,
        quantity: int,
        actor_id: str,
        kind: MovementKind = MovementKind.STOCK_IN,
        reason: str | None = None,
        related_order_id: str | None = None,
    ) -> InventoryMovement:
        """在庫を増やす (入荷・返品・棚卸し調整)。上限はない。"""
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", quantity=quantity)
        if not kind.is_inbound:
            raise ValidationError(f"{kind.value} cannot increase stock", kind=kind.value)

        if not await self.items.increment(item_id, quantity):
            raise NotFound("InventoryItem", item_id)

        movement = await self.movements.append(
            item_id,
            quantity,
            kind,
            actor_id,
            reason=reason,
            related_order_id=related_order_id,
        )
        logger.debug("Stock increased: item=%s qty=%d kind=%s", item_id, quantity, kind.value)
        return movement

    async def low_stock(self, threshold: int | None = None) -> AsyncIterator[InventoryItem]:
        """在庫が閾値以下の商品を遅延評価で返す (読み取りのみ)。"""
        async for item in self.items.stream_low_stock(threshold):
            yield item

    async def movements_for(self, item_id: str) -> list[InventoryMovement]:
        if await self.items.get(item_id) is None:
            raise NotFound("InventoryItem", item_id)
        return await self.movements.list_for(item_id)

    async def reconcile(self, item_id: str) -> Reconciliation:
        item = await self.items.get(item_id)
        if item is None:
            raise NotFound("InventoryItem", item_id)
        total = await self.movements.total_delta(item_id)
        if total != item.quantity:
            logger.error(
                "Ledger mismatch: item=%s quantity=%d movements=%d",
                item_id,
                item.quantity,
                total,
            )
        return Reconciliation(item_id=item_id, quantity=item.quantity, movement_total=total)
