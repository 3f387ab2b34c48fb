"""
Checkout Service / 割引エンジン (Discount Engine)

割引コードの検証と使用回数の確保を担当する。

validate() は状態を変更しない純粋なチェックで、カート画面のプレビューにも使う。
Checkout ではコミット直前に reserve_use() で使用回数を確保する。
validate から Checkout 完了までの間に他の注文が最後の 1 回を
使ってしまう可能性があるため、2 段階に分けている。
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .errors import DiscountError, DuplicateCode, NotFound, ValidationError
from .models import Discount, DiscountCondition, DiscountType, to_money
from .repositories import DiscountRepository, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DiscountQuote:
    discount: Discount
    discount_amount: Decimal


class DiscountEngine:
    def __init__(
        self,
        discounts: DiscountRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.discounts = discounts
        self.clock = clock

    async def validate(
        self,
        code: str,
        cart_subtotal: Decimal,
        item_count: int,
    ) -> DiscountQuote:
        """
        割引コードを検証して割引額を返す。

        違反があれば最初に見つかったものを DiscountError で報告する。
        評価順: CodeNotFound → Inactive → Expired → MinSpendNotMet
                → MinItemsNotMet → UsageLimitReached
        """
        discount = await self.discounts.get_by_code(code)
        if discount is None:
            raise DiscountError(DiscountError.CODE_NOT_FOUND, code)
        check_eligibility(discount, to_money(cart_subtotal), item_count, self.clock())
        return DiscountQuote(discount, discount.amount_for(to_money(cart_subtotal)))

    async def reserve_use(self, discount_id: str) -> bool:
        """使用回数を 1 つ確保する。上限に達していれば False (変更なし)。"""
        reserved = await self.discounts.try_reserve_use(discount_id)
        if not reserved:
            logger.info("Discount usage limit reached at reservation: %s", discount_id)
        return reserved

    # ── 管理操作 ────────────────────────────────

    async def create(
        self,
        code: str,
        type: DiscountType,
        value: Decimal,
        created_by: str,
        description: str = "",
        condition: DiscountCondition | None = None,
        is_active: bool = True,
    ) -> Discount:
        code = code.strip()
        if not code:
            raise ValidationError("Discount code is required")
        if value <= 0:
            raise ValidationError("Discount value must be positive", value=str(value))
        if type is DiscountType.PERCENTAGE and value > 100:
            raise ValidationError("Percentage discount cannot exceed 100", value=str(value))
        condition = condition or DiscountCondition()
        if condition.max_usage is not None and condition.max_usage < 1:
            raise ValidationError("max_usage must be at least 1")
        if await self.discounts.get_by_code(code):
            raise DuplicateCode(code)

        discount = Discount(
            id=str(uuid.uuid4()),
            code=code,
            description=description,
            type=type,
            value=to_money(value),
            condition=condition,
            is_active=is_active,
            used_count=0,
            created_at=utcnow(),
            created_by=created_by,
        )
        await self.discounts.add(discount)
        return discount

    async def update(
        self,
        discount_id: str,
        code: str | None = None,
        description: str | None = None,
        type: DiscountType | None = None,
        value: Decimal | None = None,
        condition: DiscountCondition | None = None,
        is_active: bool | None = None,
    ) -> Discount:
        """
        割引の設定を変更する。condition を渡すと条件はまるごと置き換わる。
        使用回数は変更できず、max_usage を使用済み回数より小さくはできない。
        """
        current = await self.discounts.get(discount_id)
        if current is None:
            raise NotFound("Discount", discount_id)

        values = {}
        if code is not None:
            code = code.strip()
            if not code:
                raise ValidationError("Discount code is required")
            existing = await self.discounts.get_by_code(code)
            if existing and existing.id != discount_id:
                raise DuplicateCode(code)
            values["code"] = code
        if description is not None:
            values["description"] = description
        new_type = type or current.type
        new_value = value if value is not None else current.value
        if value is not None or type is not None:
            if new_value <= 0:
                raise ValidationError("Discount value must be positive", value=str(new_value))
            if new_type is DiscountType.PERCENTAGE and new_value > 100:
                raise ValidationError(
                    "Percentage discount cannot exceed 100", value=str(new_value)
                )
            values["type"] = new_type.value
            values["value"] = to_money(new_value)
        if condition is not None:
            if condition.max_usage is not None and condition.max_usage < 1:
                raise ValidationError("max_usage must be at least 1")
            values.update(
                min_spend=condition.min_spend,
                min_items=condition.min_items,
                max_usage=condition.max_usage,
                valid_until=condition.valid_until,
            )
        if is_active is not None:
            values["is_active"] = is_active

        if values and not await self.discounts.update_details(discount_id, values):
            latest = await self.discounts.get(discount_id)
            if latest is None:
                raise NotFound("Discount", discount_id)
            raise ValidationError(
                "max_usage cannot be lower than the number of times the code was used",
                max_usage=condition.max_usage,
                used_count=latest.used_count,
            )
        return await self.discounts.get(discount_id)

    async def get(self, discount_id: str) -> Discount:
        discount = await self.discounts.get(discount_id)
        if discount is None:
            raise NotFound("Discount", discount_id)
        return discount

    async def all_discounts(self) -> list[Discount]:
        return await self.discounts.list_all()

    async def deactivate(self, discount_id: str) -> Discount:
        """無効化はフラグだけ。履歴の注文から参照されるので削除はしない。"""
        if not await self.discounts.set_active(discount_id, False):
            raise NotFound("Discount", discount_id)
        return await self.discounts.get(discount_id)

    async def active_discounts(self) -> list[Discount]:
        return await self.discounts.list_active()

    async def stats(self) -> dict:
        return await self.discounts.stats()


def check_eligibility(
    discount: Discount,
    subtotal: Decimal,
    item_count: int,
    now: datetime,
) -> None:
    cond = discount.condition
    if not discount.is_active:
        raise DiscountError(DiscountError.INACTIVE, discount.code)
    if cond.valid_until is not None and cond.valid_until < now:
        raise DiscountError(DiscountError.EXPIRED, discount.code)
    if cond.min_spend is not None and subtotal < cond.min_spend:
        raise DiscountError(
            DiscountError.MIN_SPEND_NOT_MET, discount.code, min_spend=cond.min_spend
        )
    if cond.min_items is not None and item_count < cond.min_items:
        raise DiscountError(
            DiscountError.MIN_ITEMS_NOT_MET, discount.code, min_items=cond.min_items
        )
    if cond.max_usage is not None and discount.used_count >= cond.max_usage:
        raise DiscountError(DiscountError.USAGE_LIMIT_REACHED, discount.code)
