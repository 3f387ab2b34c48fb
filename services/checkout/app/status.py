"""
Checkout Service / 注文ステータスの状態遷移 (Order Status Machine)

状態遷移:
    Processing → Shipped → Delivered
    Processing → Cancelled
    Shipped    → Cancelled
    (Refunded 以外の全状態) → Refunded

Processing から Delivered へ直接は遷移できない (Shipped を経由する)。
Delivered / Cancelled / Refunded は終端で、Delivered と Cancelled から
抜けられるのは Refunded だけ。
"""

from .errors import IllegalTransition
from .models import OrderStatus

INITIAL_STATUS = OrderStatus.PROCESSING

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.SHIPPED: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}


class OrderStatusMachine:
    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        return target in TRANSITIONS[current]

    def transition(self, current: OrderStatus, target: OrderStatus) -> OrderStatus:
        """遷移が許されていれば target を返し、そうでなければ IllegalTransition。"""
        if not self.can_transition(current, target):
            raise IllegalTransition(current.value, target.value)
        return target

    def allowed_targets(self, current: OrderStatus) -> list[OrderStatus]:
        return sorted(TRANSITIONS[current], key=lambda s: list(OrderStatus).index(s))

    def is_terminal(self, status: OrderStatus) -> bool:
        return status in (
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
        )
