"""Tests for discount validation and usage reservation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.discounts import DiscountEngine
from app.errors import DiscountError, DuplicateCode, NotFound, ValidationError
from app.models import DiscountCondition, DiscountType
from app.repositories import DiscountRepository, UnitOfWork
from conftest import MANAGER, add_discount, used_count_of

pytestmark = pytest.mark.anyio

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


async def validate(session_factory, code, subtotal, item_count=1):
    async with UnitOfWork(session_factory) as uow:
        return await DiscountEngine(uow.discounts, clock=lambda: NOW).validate(
            code, Decimal(subtotal), item_count
        )


class TestAmounts:
    async def test_percentage(self, session_factory):
        await add_discount(
            session_factory, "SUMMER10", DiscountType.PERCENTAGE, "10",
            min_spend=Decimal("100"), max_usage=1,
        )

        quote = await validate(session_factory, "SUMMER10", "150")

        assert quote.discount_amount == Decimal("15.00")

    async def test_percentage_rounds_to_cents(self, session_factory):
        await add_discount(session_factory, "P15", DiscountType.PERCENTAGE, "15")

        quote = await validate(session_factory, "P15", "9.99")

        assert quote.discount_amount == Decimal("1.50")

    async def test_fixed_amount_capped_at_subtotal(self, session_factory):
        await add_discount(session_factory, "50OFF", DiscountType.FIXED_AMOUNT, "50")

        quote = await validate(session_factory, "50OFF", "30")

        assert quote.discount_amount == Decimal("30.00")

    async def test_hundred_percent_is_whole_subtotal(self, session_factory):
        await add_discount(session_factory, "FREE", DiscountType.PERCENTAGE, "100")

        quote = await validate(session_factory, "FREE", "42.10")

        assert quote.discount_amount == Decimal("42.10")


class TestValidationFailures:
    async def test_unknown_code(self, session_factory):
        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "NOPE", "100")
        assert exc_info.value.reason == DiscountError.CODE_NOT_FOUND

    async def test_inactive(self, session_factory):
        d = await add_discount(session_factory, "OLD", DiscountType.FIXED_AMOUNT, "5")
        async with UnitOfWork(session_factory) as uow:
            await DiscountEngine(uow.discounts).deactivate(d.id)

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "OLD", "100")
        assert exc_info.value.reason == DiscountError.INACTIVE

    async def test_expired(self, session_factory):
        await add_discount(
            session_factory, "LATE", DiscountType.FIXED_AMOUNT, "5",
            valid_until=NOW - timedelta(seconds=1),
        )

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "LATE", "100")
        assert exc_info.value.reason == DiscountError.EXPIRED

    async def test_valid_until_in_future_is_fine(self, session_factory):
        await add_discount(
            session_factory, "SOON", DiscountType.FIXED_AMOUNT, "5",
            valid_until=NOW + timedelta(days=1),
        )

        quote = await validate(session_factory, "SOON", "100")

        assert quote.discount_amount == Decimal("5.00")

    async def test_min_spend_not_met(self, session_factory):
        await add_discount(
            session_factory, "BIG", DiscountType.PERCENTAGE, "10", min_spend=Decimal("100")
        )

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "BIG", "99.99")
        assert exc_info.value.reason == DiscountError.MIN_SPEND_NOT_MET

    async def test_min_items_not_met(self, session_factory):
        await add_discount(session_factory, "BULK", DiscountType.PERCENTAGE, "10", min_items=3)

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "BULK", "100", item_count=2)
        assert exc_info.value.reason == DiscountError.MIN_ITEMS_NOT_MET

    async def test_usage_limit_reached(self, session_factory):
        d = await add_discount(session_factory, "ONCE", DiscountType.FIXED_AMOUNT, "5", max_usage=1)
        async with UnitOfWork(session_factory) as uow:
            assert await DiscountEngine(uow.discounts).reserve_use(d.id)

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "ONCE", "100")
        assert exc_info.value.reason == DiscountError.USAGE_LIMIT_REACHED

    async def test_first_violation_wins(self, session_factory):
        """期限切れかつ最低金額未満なら Expired を報告する"""
        await add_discount(
            session_factory, "BOTH", DiscountType.PERCENTAGE, "10",
            min_spend=Decimal("500"), valid_until=NOW - timedelta(days=1),
        )

        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "BOTH", "10")
        assert exc_info.value.reason == DiscountError.EXPIRED

    async def test_validate_does_not_mutate(self, session_factory):
        d = await add_discount(session_factory, "LOOK", DiscountType.FIXED_AMOUNT, "5", max_usage=1)

        for _ in range(3):
            await validate(session_factory, "LOOK", "100")

        assert await used_count_of(session_factory, d.id) == 0


class TestReserveUse:
    async def test_reserve_stops_at_max_usage(self, session_factory):
        d = await add_discount(session_factory, "TWICE", DiscountType.FIXED_AMOUNT, "5", max_usage=2)

        results = []
        for _ in range(3):
            async with UnitOfWork(session_factory) as uow:
                results.append(await DiscountEngine(uow.discounts).reserve_use(d.id))

        assert results == [True, True, False]
        assert await used_count_of(session_factory, d.id) == 2

    async def test_unlimited_discount(self, session_factory):
        d = await add_discount(session_factory, "ANY", DiscountType.FIXED_AMOUNT, "5")

        for _ in range(5):
            async with UnitOfWork(session_factory) as uow:
                assert await DiscountEngine(uow.discounts).reserve_use(d.id)

        assert await used_count_of(session_factory, d.id) == 5


class TestAdministration:
    async def test_duplicate_code(self, session_factory):
        await add_discount(session_factory, "DUP", DiscountType.FIXED_AMOUNT, "5")

        with pytest.raises(DuplicateCode):
            await add_discount(session_factory, "DUP", DiscountType.PERCENTAGE, "5")

    @pytest.mark.parametrize(
        "type, value",
        [
            (DiscountType.PERCENTAGE, "0"),
            (DiscountType.PERCENTAGE, "101"),
            (DiscountType.FIXED_AMOUNT, "-5"),
        ],
    )
    async def test_invalid_values(self, session_factory, type, value):
        with pytest.raises(ValidationError):
            await add_discount(session_factory, "BAD", type, value)

    async def test_deactivate_unknown(self, session_factory):
        with pytest.raises(NotFound):
            async with UnitOfWork(session_factory) as uow:
                await DiscountEngine(uow.discounts).deactivate("missing")

    async def test_active_discounts_and_stats(self, session_factory):
        keep = await add_discount(session_factory, "KEEP", DiscountType.FIXED_AMOUNT, "5")
        drop = await add_discount(session_factory, "DROP", DiscountType.FIXED_AMOUNT, "5")
        async with UnitOfWork(session_factory) as uow:
            engine = DiscountEngine(uow.discounts)
            await engine.deactivate(drop.id)
            await engine.reserve_use(keep.id)

        async with UnitOfWork(session_factory) as uow:
            engine = DiscountEngine(uow.discounts)
            active = await engine.active_discounts()
            stats = await engine.stats()

        assert [d.code for d in active] == ["KEEP"]
        assert stats == {"total_discounts": 2, "active_discounts": 1, "total_usage": 1}

    async def test_create_records_creator(self, session_factory):
        async with UnitOfWork(session_factory) as uow:
            d = await DiscountEngine(uow.discounts).create(
                "  SPRING  ",
                DiscountType.PERCENTAGE,
                Decimal("12.5"),
                created_by=MANAGER.id,
                condition=DiscountCondition(min_items=2),
            )

        assert d.code == "SPRING"
        assert d.created_by == MANAGER.id
        assert d.condition.min_items == 2
        assert d.used_count == 0

    async def test_code_taken_after_the_check_is_still_duplicate(self, session_factory, monkeypatch):
        await add_discount(session_factory, "DUP", DiscountType.FIXED_AMOUNT, "5")

        async def not_seen_yet(self, code):
            return None

        monkeypatch.setattr(DiscountRepository, "get_by_code", not_seen_yet)

        with pytest.raises(DuplicateCode):
            await add_discount(session_factory, "DUP", DiscountType.FIXED_AMOUNT, "5")


async def update(session_factory, discount_id, **changes):
    async with UnitOfWork(session_factory) as uow:
        return await DiscountEngine(uow.discounts).update(discount_id, **changes)


class TestUpdate:
    async def test_change_value_and_description(self, session_factory):
        d = await add_discount(session_factory, "SAVE", DiscountType.PERCENTAGE, "10")

        updated = await update(
            session_factory, d.id, value=Decimal("15"), description="Spring sale"
        )

        assert (updated.value, updated.description) == (Decimal("15.00"), "Spring sale")
        assert updated.code == "SAVE"
        assert updated.type is DiscountType.PERCENTAGE

    async def test_max_usage_below_used_count_is_refused(self, session_factory):
        d = await add_discount(session_factory, "LIMITED", DiscountType.FIXED_AMOUNT, "5", max_usage=5)
        for _ in range(3):
            async with UnitOfWork(session_factory) as uow:
                await DiscountEngine(uow.discounts).reserve_use(d.id)

        with pytest.raises(ValidationError) as exc_info:
            await update(session_factory, d.id, condition=DiscountCondition(max_usage=2))

        assert exc_info.value.details["used_count"] == 3
        async with UnitOfWork(session_factory) as uow:
            assert (await uow.discounts.get(d.id)).condition.max_usage == 5

    async def test_max_usage_down_to_used_count_is_allowed(self, session_factory):
        d = await add_discount(session_factory, "LIMITED", DiscountType.FIXED_AMOUNT, "5", max_usage=5)
        for _ in range(3):
            async with UnitOfWork(session_factory) as uow:
                await DiscountEngine(uow.discounts).reserve_use(d.id)

        updated = await update(session_factory, d.id, condition=DiscountCondition(max_usage=3))

        assert (updated.condition.max_usage, updated.used_count) == (3, 3)
        with pytest.raises(DiscountError) as exc_info:
            await validate(session_factory, "LIMITED", "50")
        assert exc_info.value.reason == DiscountError.USAGE_LIMIT_REACHED

    async def test_switching_to_percentage_checks_the_value(self, session_factory):
        d = await add_discount(session_factory, "BIG", DiscountType.FIXED_AMOUNT, "150")

        with pytest.raises(ValidationError):
            await update(session_factory, d.id, type=DiscountType.PERCENTAGE)

    async def test_code_of_another_discount_is_rejected(self, session_factory):
        await add_discount(session_factory, "ONE", DiscountType.FIXED_AMOUNT, "5")
        two = await add_discount(session_factory, "TWO", DiscountType.FIXED_AMOUNT, "5")

        with pytest.raises(DuplicateCode):
            await update(session_factory, two.id, code="ONE")

    async def test_unknown_discount(self, session_factory):
        with pytest.raises(NotFound):
            await update(session_factory, "missing", description="x")
