"""
Checkout Service / リポジトリと Unit of Work

すべての書き込みはここを通る。在庫数と割引使用回数の更新は
「条件付き UPDATE 1 文」で行い、読み取りと書き込みの間に
他のトランザクションが割り込めないようにする:

    UPDATE inventory_items SET quantity = quantity - :q
    WHERE id = :id AND quantity >= :q

影響行数が 0 なら条件を満たさなかったということなので、何も変更されない。
PostgreSQL では行ロック、SQLite ではデータベースの書き込みロックが
コミットまで保持される。

ロック待ちのタイムアウトやデッドロックなどの一時的な競合は
run_with_retry() で新しいトランザクションからやり直す。
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .db import (
    DiscountTable,
    InventoryItemTable,
    InventoryMovementTable,
    OrderItemTable,
    OrderTable,
)
from .errors import Conflict, DuplicateCode, DuplicateSku
from .models import (
    Customer,
    Discount,
    DiscountCondition,
    DiscountType,
    InventoryItem,
    InventoryMovement,
    MovementKind,
    Order,
    OrderItem,
    OrderStatus,
    to_money,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL: serialization_failure / deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_transient(exc: DBAPIError) -> bool:
    """リトライすれば成功しうる競合エラーかどうか。"""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True
    # SQLite: 書き込みロックの待ちがタイムアウトした
    return "database is locked" in str(orig)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    retry_backoff: float,
    label: str,
) -> T:
    """
    operation を実行し、一時的な競合で失敗したら最大 max_retries 回やり直す。

    operation は呼ばれるたびに新しい UnitOfWork を開くこと。
    リトライが尽きたら Conflict を送出する。競合以外の DB エラーはそのまま伝える。
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except DBAPIError as exc:
            if not is_transient(exc):
                raise
            if attempt > max_retries:
                logger.warning("%s gave up after %d attempts: %s", label, attempt, exc.orig)
                raise Conflict(attempt, label) from exc
            logger.info(
                "%s contention (attempt %d/%d), retrying",
                label,
                attempt,
                max_retries + 1,
            )
            await asyncio.sleep(retry_backoff * attempt)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保存しないので UTC として扱う
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row → Domain ─────────────────────────────────


def _to_item(row: InventoryItemTable) -> InventoryItem:
    return InventoryItem(
        id=row.id,
        sku=row.sku,
        name=row.name,
        category=row.category,
        price=to_money(row.price),
        quantity=row.quantity,
        threshold=row.threshold,
        warranty_period=row.warranty_period,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _to_movement(row: InventoryMovementTable) -> InventoryMovement:
    return InventoryMovement(
        id=row.id,
        item_id=row.item_id,
        delta=row.delta,
        kind=MovementKind(row.kind),
        reason=row.reason,
        related_order_id=row.related_order_id,
        actor_id=row.actor_id,
        created_at=_utc(row.created_at),
    )


def _to_discount(row: DiscountTable) -> Discount:
    return Discount(
        id=row.id,
        code=row.code,
        description=row.description,
        type=DiscountType(row.type),
        value=to_money(row.value),
        condition=DiscountCondition(
            min_spend=to_money(row.min_spend) if row.min_spend is not None else None,
            min_items=row.min_items,
            max_usage=row.max_usage,
            valid_until=_utc(row.valid_until),
        ),
        is_active=row.is_active,
        used_count=row.used_count,
        created_at=_utc(row.created_at),
        created_by=row.created_by,
    )


def _to_order(row: OrderTable, item_rows: list[OrderItemTable]) -> Order:
    return Order(
        id=row.id,
        customer=Customer(
            name=row.customer_name,
            contact=row.customer_contact,
            address=row.customer_address,
            email=row.customer_email,
        ),
        items=tuple(
            OrderItem(
                inventory_item_id=i.inventory_item_id,
                name=i.name,
                sku=i.sku,
                quantity=i.quantity,
                price_at_purchase=to_money(i.price_at_purchase),
            )
            for i in item_rows
        ),
        subtotal=to_money(row.subtotal),
        discount_id=row.discount_id,
        discount_amount=to_money(row.discount_amount),
        total=to_money(row.total),
        status=OrderStatus(row.status),
        created_by=row.created_by,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


# ── Inventory ────────────────────────────────────


class ItemRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, item_id: str) -> InventoryItem | None:
        row = await self.session.get(InventoryItemTable, item_id, populate_existing=True)
        return _to_item(row) if row else None

    async def get_by_sku(self, sku: str) -> InventoryItem | None:
        row = (
            await self.session.execute(
                select(InventoryItemTable).where(InventoryItemTable.sku == sku)
            )
        ).scalar_one_or_none()
        return _to_item(row) if row else None

    async def add(self, item: InventoryItem) -> None:
        self.session.add(
            InventoryItemTable(
                id=item.id,
                sku=item.sku,
                name=item.name,
                category=item.category,
                price=item.price,
                quantity=item.quantity,
                threshold=item.threshold,
                warranty_period=item.warranty_period,
                created_at=item.created_at,
                updated_at=item.updated_at,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # 同じ SKU を登録した別トランザクションが先にコミットした
            raise DuplicateSku(item.sku) from exc

    async def update_details(self, item_id: str, values: dict) -> bool:
        """在庫数以外の項目 (名前・SKU・価格・閾値など) を更新する。"""
        try:
            result = await self.session.execute(
                update(InventoryItemTable)
                .where(InventoryItemTable.id == item_id)
                .values(**values, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            raise DuplicateSku(values.get("sku", "")) from exc
        return result.rowcount == 1

    async def try_decrement(self, item_id: str, quantity: int) -> bool:
        """在庫が足りるときだけ減らす。減らせたら True。"""
        result = await self.session.execute(
            update(InventoryItemTable)
            .where(
                InventoryItemTable.id == item_id,
                InventoryItemTable.quantity >= quantity,
            )
            .values(quantity=InventoryItemTable.quantity - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment(self, item_id: str, quantity: int) -> bool:
        result = await self.session.execute(
            update(InventoryItemTable)
            .where(InventoryItemTable.id == item_id)
            .values(quantity=InventoryItemTable.quantity + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def stream_low_stock(self, threshold: int | None = None) -> AsyncIterator[InventoryItem]:
        """
        在庫が閾値以下の商品を 1 件ずつ返す。
        threshold が None のときは商品ごとの閾値を使う。
        """
        limit = InventoryItemTable.threshold if threshold is None else threshold
        rows = await self.session.stream_scalars(
            select(InventoryItemTable)
            .where(InventoryItemTable.quantity <= limit)
            .order_by(InventoryItemTable.quantity.asc(), InventoryItemTable.name.asc())
        )
        async for row in rows:
            yield _to_item(row)

    async def stock_summary(self) -> dict:
        result = await self.session.execute(
            text("""
                SELECT
                    COUNT(*) AS total_items,
                    COALESCE(SUM(quantity * price), 0) AS total_value,
                    COALESCE(SUM(CASE WHEN quantity <= threshold THEN 1 ELSE 0 END), 0)
                        AS low_stock_items,
                    COALESCE(SUM(CASE WHEN quantity = 0 THEN 1 ELSE 0 END), 0)
                        AS out_of_stock_items
                FROM inventory_items
            """)
        )
        row = result.fetchone()
        return {
            "total_items": row.total_items,
            "total_value": to_money(row.total_value),
            "low_stock_items": row.low_stock_items,
            "out_of_stock_items": row.out_of_stock_items,
        }


class MovementRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        item_id: str,
        delta: int,
        kind: MovementKind,
        actor_id: str,
        reason: str | None = None,
        related_order_id: str | None = None,
    ) -> InventoryMovement:
        row = InventoryMovementTable(
            item_id=item_id,
            delta=delta,
            kind=kind.value,
            reason=reason,
            related_order_id=related_order_id,
            actor_id=actor_id,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _to_movement(row)

    async def list_for(self, item_id: str) -> list[InventoryMovement]:
        rows = (
            await self.session.scalars(
                select(InventoryMovementTable)
                .where(InventoryMovementTable.item_id == item_id)
                .order_by(InventoryMovementTable.id.asc())
            )
        ).all()
        return [_to_movement(r) for r in rows]

    async def total_delta(self, item_id: str) -> int:
        total = await self.session.scalar(
            select(func.coalesce(func.sum(InventoryMovementTable.delta), 0)).where(
                InventoryMovementTable.item_id == item_id
            )
        )
        return int(total)


# ── Discounts ────────────────────────────────────


class DiscountRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, discount_id: str) -> Discount | None:
        row = await self.session.get(DiscountTable, discount_id, populate_existing=True)
        return _to_discount(row) if row else None

    async def get_by_code(self, code: str) -> Discount | None:
        row = (
            await self.session.execute(
                select(DiscountTable)
                .where(DiscountTable.code == code)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        return _to_discount(row) if row else None

    async def add(self, discount: Discount) -> None:
        cond = discount.condition
        self.session.add(
            DiscountTable(
                id=discount.id,
                code=discount.code,
                description=discount.description,
                type=discount.type.value,
                value=discount.value,
                min_spend=cond.min_spend,
                min_items=cond.min_items,
                max_usage=cond.max_usage,
                valid_until=cond.valid_until,
                is_active=discount.is_active,
                used_count=discount.used_count,
                created_at=discount.created_at,
                created_by=discount.created_by,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateCode(discount.code) from exc

    async def update_details(self, discount_id: str, values: dict) -> bool:
        """
        割引の設定を更新する。used_count は変更しない。

        max_usage を下げるときは「used_count <= 新しい上限」を条件にするので、
        同時に使用回数が増えても上限を下回ることはない。
        """
        stmt = update(DiscountTable).where(DiscountTable.id == discount_id)
        if values.get("max_usage") is not None:
            stmt = stmt.where(DiscountTable.used_count <= values["max_usage"])
        try:
            result = await self.session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            raise DuplicateCode(values.get("code", "")) from exc
        return result.rowcount == 1

    async def list_all(self) -> list[Discount]:
        rows = (
            await self.session.scalars(
                select(DiscountTable).order_by(DiscountTable.created_at.desc())
            )
        ).all()
        return [_to_discount(r) for r in rows]

    async def try_reserve_use(self, discount_id: str) -> bool:
        """使用回数を 1 増やす。上限に達していれば何もせず False。"""
        result = await self.session.execute(
            update(DiscountTable)
            .where(
                DiscountTable.id == discount_id,
                (DiscountTable.max_usage.is_(None))
                | (DiscountTable.used_count < DiscountTable.max_usage),
            )
            .values(used_count=DiscountTable.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_active(self, discount_id: str, active: bool) -> bool:
        result = await self.session.execute(
            update(DiscountTable)
            .where(DiscountTable.id == discount_id)
            .values(is_active=active)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_active(self) -> list[Discount]:
        rows = (
            await self.session.scalars(
                select(DiscountTable)
                .where(DiscountTable.is_active.is_(True))
                .order_by(DiscountTable.created_at.desc())
            )
        ).all()
        return [_to_discount(r) for r in rows]

    async def stats(self) -> dict:
        result = await self.session.execute(
            text("""
                SELECT
                    COUNT(*) AS total_discounts,
                    COALESCE(SUM(CASE WHEN is_active THEN 1 ELSE 0 END), 0) AS active_discounts,
                    COALESCE(SUM(used_count), 0) AS total_usage
                FROM discounts
            """)
        )
        row = result.fetchone()
        return {
            "total_discounts": row.total_discounts,
            "active_discounts": row.active_discounts,
            "total_usage": row.total_usage,
        }


# ── Orders ───────────────────────────────────────


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, order: Order) -> None:
        self.session.add(
            OrderTable(
                id=order.id,
                customer_name=order.customer.name,
                customer_contact=order.customer.contact,
                customer_address=order.customer.address,
                customer_email=order.customer.email,
                subtotal=order.subtotal,
                discount_id=order.discount_id,
                discount_amount=order.discount_amount,
                total=order.total,
                status=order.status.value,
                created_by=order.created_by,
                created_at=order.created_at,
                updated_at=order.updated_at,
            )
        )
        # 明細より先に注文行を INSERT させる (外部キー)
        await self.session.flush()
        self.session.add_all(
            OrderItemTable(
                order_id=order.id,
                inventory_item_id=i.inventory_item_id,
                name=i.name,
                sku=i.sku,
                quantity=i.quantity,
                price_at_purchase=i.price_at_purchase,
            )
            for i in order.items
        )
        await self.session.flush()

    async def get(self, order_id: str) -> Order | None:
        row = await self.session.get(OrderTable, order_id, populate_existing=True)
        if not row:
            return None
        return _to_order(row, await self._items_for(order_id))

    async def list_all(self, status: OrderStatus | None = None) -> list[Order]:
        stmt = select(OrderTable).order_by(OrderTable.created_at.desc())
        if status is not None:
            stmt = stmt.where(OrderTable.status == status.value)
        rows = (await self.session.scalars(stmt)).all()
        return [_to_order(r, await self._items_for(r.id)) for r in rows]

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
    ) -> bool:
        """現在のステータスが expected のときだけ target に更新する。"""
        result = await self.session.execute(
            update(OrderTable)
            .where(OrderTable.id == order_id, OrderTable.status == expected.value)
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _items_for(self, order_id: str) -> list[OrderItemTable]:
        return list(
            (
                await self.session.scalars(
                    select(OrderItemTable)
                    .where(OrderItemTable.order_id == order_id)
                    .order_by(OrderItemTable.id.asc())
                )
            ).all()
        )


# ── Unit of Work ─────────────────────────────────


class UnitOfWork:
    """
    1 トランザクション分のリポジトリをまとめる。

    async with ブロックを例外なく抜けるとコミット、例外 (タスクの
    キャンセルを含む) で抜けるとロールバックする。途中までの在庫減算や
    割引使用が残ることはない。
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self.items = ItemRepository(self.session)
        self.movements = MovementRepository(self.session)
        self.discounts = DiscountRepository(self.session)
        self.orders = OrderRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
        finally:
            await self.session.close()
