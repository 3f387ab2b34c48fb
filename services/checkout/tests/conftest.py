"""Pytest fixtures for the checkout service (SQLite file database per test)."""

import json
from decimal import Decimal

import httpx
import pytest

from app import commands
from app.db import create_engine, create_schema, create_session_factory
from app.event_bus import EventBus
from app.main import app, get_event_bus, get_session_factory
from app.models import DiscountCondition
from app.repositories import UnitOfWork
from app.security import Actor, Role

STAFF = Actor("staff-1", Role.STAFF)
MANAGER = Actor("manager-1", Role.MANAGER)
ADMIN = Actor("admin-1", Role.ADMIN)


class RecordingRedis:
    """Redis の publish だけを記録する代役。"""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self, channel: str | None = None) -> list[str]:
        return [
            payload["event_type"]
            for ch, payload in self.published
            if channel is None or ch == channel
        ]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(anyio_backend, tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def bus(redis) -> EventBus:
    return EventBus(redis)


@pytest.fixture
async def client(session_factory, bus):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_event_bus] = lambda: bus
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


# ── Seed helpers ─────────────────────────────────


async def add_item(session_factory, sku, price, quantity, threshold=0, name=None):
    return await commands.add_inventory_item(
        session_factory,
        MANAGER,
        sku=sku,
        name=name or f"Item {sku}",
        price=Decimal(price),
        quantity=quantity,
        threshold=threshold,
    )


async def add_discount(session_factory, code, type, value, **condition):
    return await commands.create_discount(
        session_factory,
        MANAGER,
        code=code,
        type=type,
        value=Decimal(value),
        condition=DiscountCondition(**condition),
    )


async def stock_of(session_factory, item_id) -> int:
    async with UnitOfWork(session_factory) as uow:
        return (await uow.items.get(item_id)).quantity


async def used_count_of(session_factory, discount_id) -> int:
    async with UnitOfWork(session_factory) as uow:
        return (await uow.discounts.get(discount_id)).used_count


async def all_orders(session_factory):
    async with UnitOfWork(session_factory) as uow:
        return await uow.orders.list_all()
