"""
Checkout Service / FastAPI エントリーポイント

Command (POST / PUT / PATCH) は commands.py と checkout.py、
Query (GET) は queries.py に処理を委譲する。
ドメイン層の例外は 1 つの例外ハンドラで HTTP レスポンスに変換する。
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import commands, config, queries
from .checkout import CheckoutOrchestrator
from .db import create_engine, create_schema, create_session_factory
from .errors import CheckoutServiceError, NotFound
from .event_bus import EventBus
from .models import CartItem, Customer, DiscountCondition, DiscountType, MovementKind, OrderStatus
from .queries import discount_to_dict, item_to_dict, movement_to_dict, order_to_dict
from .repositories import UnitOfWork
from .security import MANAGEMENT_ROLES, STAFF_ROLES, Actor, current_actor

engine = create_engine(config.DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    config.configure_logging()
    await create_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Checkout Service", lifespan=lifespan)


@app.exception_handler(CheckoutServiceError)
async def handle_domain_error(request: Request, exc: CheckoutServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Dependencies ─────────────────────────────────


def get_session_factory():
    return async_session


def get_event_bus() -> EventBus:
    return EventBus(redis_pool)


# ── Request Models ───────────────────────────────


class CustomerModel(BaseModel):
    name: str
    contact: str = ""
    address: str = ""
    email: str = ""


class CartLine(BaseModel):
    inventory_item_id: str
    quantity: int


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer: CustomerModel
    cart: list[CartLine]
    discount_code: str | None = Field(default=None, alias="discountCode")


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class ValidateDiscountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    cart_total: Decimal = Field(alias="cartTotal")
    item_count: int = Field(default=0, alias="itemCount")


class DiscountConditionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    min_spend: Decimal | None = Field(default=None, alias="minSpend")
    min_items: int | None = Field(default=None, alias="minItems")
    max_usage: int | None = Field(default=None, alias="maxUsage")
    valid_until: datetime | None = Field(default=None, alias="validUntil")


class CreateDiscountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    type: DiscountType
    value: Decimal
    description: str = ""
    condition: DiscountConditionModel = DiscountConditionModel()
    is_active: bool = Field(default=True, alias="isActive")


class UpdateDiscountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str | None = None
    type: DiscountType | None = None
    value: Decimal | None = None
    description: str | None = None
    condition: DiscountConditionModel | None = None
    is_active: bool | None = Field(default=None, alias="isActive")


class CreateItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sku: str
    name: str
    price: Decimal
    quantity: int = 0
    threshold: int = 0
    category: str = ""
    warranty_period: int | None = Field(default=None, alias="warrantyPeriod")


class UpdateItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sku: str | None = None
    name: str | None = None
    price: Decimal | None = None
    threshold: int | None = None
    category: str | None = None
    warranty_period: int | None = Field(default=None, alias="warrantyPeriod")


class RestockRequest(BaseModel):
    quantity: int
    kind: MovementKind = MovementKind.STOCK_IN
    reason: str | None = None


# ── Orders ───────────────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
    bus: EventBus = Depends(get_event_bus),
):
    """
    Checkout: カートを注文に変換する

    在庫不足 (400 InsufficientStock) の item_id は商品 ID 順で最初に
    足りなかった商品。カートの行の順とは限らない。
    """
    order = await CheckoutOrchestrator(session_factory, bus).checkout(
        actor,
        Customer(**req.customer.model_dump()),
        [CartItem(line.inventory_item_id, line.quantity) for line in req.cart],
        req.discount_code,
    )
    return order_to_dict(order)


@app.get("/orders")
async def list_orders(
    status: OrderStatus | None = None,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    actor.require(STAFF_ROLES, "view orders")
    async with UnitOfWork(session_factory) as uow:
        return await queries.list_orders(uow, status)


@app.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    actor.require(STAFF_ROLES, "view orders")
    async with UnitOfWork(session_factory) as uow:
        order = await queries.get_order(uow, order_id)
    if not order:
        raise NotFound("Order", order_id)
    return order


@app.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
    bus: EventBus = Depends(get_event_bus),
):
    order = await commands.change_order_status(session_factory, bus, order_id, req.status, actor)
    return order_to_dict(order)


# ── Discounts ────────────────────────────────────


@app.post("/discounts/validate")
async def validate_discount(
    req: ValidateDiscountRequest,
    session_factory=Depends(get_session_factory),
):
    """割引コードの事前チェック (使用回数は変更しない)"""
    async with UnitOfWork(session_factory) as uow:
        return await queries.validate_discount(uow, req.code.strip(), req.cart_total, req.item_count)


@app.get("/discounts/active")
async def list_active_discounts(session_factory=Depends(get_session_factory)):
    async with UnitOfWork(session_factory) as uow:
        return await queries.list_active_discounts(uow)


@app.get("/discounts/stats/summary")
async def discount_stats(
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    actor.require(MANAGEMENT_ROLES, "view discount statistics")
    async with UnitOfWork(session_factory) as uow:
        return await queries.discount_stats(uow)


@app.get("/discounts")
async def list_discounts(
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    actor.require(MANAGEMENT_ROLES, "view discounts")
    async with UnitOfWork(session_factory) as uow:
        return await queries.list_discounts(uow)


@app.get("/discounts/{discount_id}")
async def get_discount(
    discount_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    actor.require(MANAGEMENT_ROLES, "view discounts")
    async with UnitOfWork(session_factory) as uow:
        return await queries.get_discount(uow, discount_id)


def to_condition(model: DiscountConditionModel) -> DiscountCondition:
    valid_until = model.valid_until
    if valid_until is not None and valid_until.tzinfo is None:
        valid_until = valid_until.replace(tzinfo=timezone.utc)
    return DiscountCondition(
        min_spend=model.min_spend,
        min_items=model.min_items,
        max_usage=model.max_usage,
        valid_until=valid_until,
    )


@app.post("/discounts", status_code=201)
async def create_discount(
    req: CreateDiscountRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    discount = await commands.create_discount(
        session_factory,
        actor,
        code=req.code,
        type=req.type,
        value=req.value,
        description=req.description,
        condition=to_condition(req.condition),
        is_active=req.is_active,
    )
    return discount_to_dict(discount)


@app.put("/discounts/{discount_id}")
async def update_discount(
    discount_id: str,
    req: UpdateDiscountRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    """割引の変更 (使用回数は変更できない)"""
    discount = await commands.update_discount(
        session_factory,
        actor,
        discount_id,
        code=req.code,
        type=req.type,
        value=req.value,
        description=req.description,
        condition=to_condition(req.condition) if req.condition else None,
        is_active=req.is_active,
    )
    return discount_to_dict(discount)


@app.patch("/discounts/{discount_id}/deactivate")
async def deactivate_discount(
    discount_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    discount = await commands.deactivate_discount(session_factory, actor, discount_id)
    return discount_to_dict(discount)


# ── Inventory ────────────────────────────────────


@app.post("/inventory", status_code=201)
async def create_item(
    req: CreateItemRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    item = await commands.add_inventory_item(
        session_factory,
        actor,
        sku=req.sku,
        name=req.name,
        price=req.price,
        quantity=req.quantity,
        threshold=req.threshold,
        category=req.category,
        warranty_period=req.warranty_period,
    )
    return item_to_dict(item)


@app.put("/inventory/{item_id}")
async def update_item(
    item_id: str,
    req: UpdateItemRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    """商品情報の変更。在庫数は restock / Checkout でのみ変わる"""
    item = await commands.update_inventory_item(
        session_factory,
        actor,
        item_id,
        name=req.name,
        sku=req.sku,
        price=req.price,
        threshold=req.threshold,
        category=req.category,
        warranty_period=req.warranty_period,
    )
    return item_to_dict(item)


@app.post("/inventory/{item_id}/restock")
async def restock_item(
    item_id: str,
    req: RestockRequest,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
    bus: EventBus = Depends(get_event_bus),
):
    """入荷・調整などの手動在庫移動"""
    movement = await commands.record_movement(
        session_factory, bus, actor, item_id, req.kind, req.quantity, req.reason
    )
    return movement_to_dict(movement)


@app.get("/inventory/low-stock")
async def low_stock(
    threshold: int | None = None,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    async with UnitOfWork(session_factory) as uow:
        return await queries.list_low_stock(uow, threshold)


@app.get("/inventory/summary")
async def stock_summary(
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    async with UnitOfWork(session_factory) as uow:
        return await queries.stock_summary(uow)


@app.get("/inventory/{item_id}")
async def get_item(
    item_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    async with UnitOfWork(session_factory) as uow:
        return await queries.get_item(uow, item_id)


@app.get("/inventory/{item_id}/movements")
async def item_movements(
    item_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    async with UnitOfWork(session_factory) as uow:
        return await queries.list_movements(uow, item_id)


@app.get("/inventory/{item_id}/reconcile")
async def reconcile_item(
    item_id: str,
    actor: Actor = Depends(current_actor),
    session_factory=Depends(get_session_factory),
):
    async with UnitOfWork(session_factory) as uow:
        return await queries.reconcile_item(uow, item_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "checkout-service"}
