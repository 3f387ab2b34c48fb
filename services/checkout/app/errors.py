"""
Checkout Service / エラー定義

ドメイン層はこれらの例外を送出し、main.py の例外ハンドラが
HTTP レスポンス {"error": kind, "message": ..., ...} に変換する。
"""


class CheckoutServiceError(Exception):
    kind = "Error"
    status_code = 500

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.details}


class ValidationError(CheckoutServiceError):
    """入力不正。ストレージに触れる前に弾く。"""

    kind = "ValidationError"
    status_code = 400


class InvalidCart(ValidationError):
    kind = "InvalidCart"


class PermissionDenied(CheckoutServiceError):
    kind = "PermissionDenied"
    status_code = 403


class NotFound(CheckoutServiceError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class DuplicateSku(CheckoutServiceError):
    kind = "DuplicateSku"
    status_code = 409

    def __init__(self, sku: str) -> None:
        super().__init__(f"An item with SKU {sku} already exists", sku=sku)
        self.sku = sku


class DuplicateCode(CheckoutServiceError):
    kind = "DuplicateCode"
    status_code = 409

    def __init__(self, code: str) -> None:
        super().__init__(f"Discount code {code} already exists", code=code)
        self.code = code


class InsufficientStock(CheckoutServiceError):
    kind = "InsufficientStock"
    status_code = 400

    def __init__(self, item_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for {item_id}: available={available}, requested={requested}",
            item_id=item_id,
            available=available,
            requested=requested,
        )
        self.item_id = item_id
        self.available = available
        self.requested = requested


class DiscountError(CheckoutServiceError):
    """割引コードが使えない。reason は検証の優先順に評価した最初の違反。"""

    kind = "DiscountError"
    status_code = 400

    CODE_NOT_FOUND = "CodeNotFound"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"
    MIN_SPEND_NOT_MET = "MinSpendNotMet"
    MIN_ITEMS_NOT_MET = "MinItemsNotMet"
    USAGE_LIMIT_REACHED = "UsageLimitReached"

    MESSAGES = {
        CODE_NOT_FOUND: "Invalid discount code",
        INACTIVE: "Discount code is no longer active",
        EXPIRED: "Discount code has expired",
        MIN_SPEND_NOT_MET: "Minimum spend of {min_spend} required for this discount",
        MIN_ITEMS_NOT_MET: "Minimum {min_items} items required for this discount",
        USAGE_LIMIT_REACHED: "Discount code has reached its usage limit",
    }

    def __init__(self, reason: str, code: str, **context) -> None:
        message = self.MESSAGES[reason].format(**context)
        super().__init__(message, reason=reason, code=code)
        self.reason = reason
        self.code = code


class IllegalTransition(CheckoutServiceError):
    kind = "IllegalTransition"
    status_code = 400

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot change order status from {current} to {target}",
            **{"from": current, "to": target},
        )
        self.current = current
        self.target = target


class Conflict(CheckoutServiceError):
    """共有カウンタの競合がリトライ上限を超えた。"""

    kind = "Conflict"
    status_code = 503

    def __init__(self, attempts: int, operation: str = "Checkout") -> None:
        super().__init__(
            f"{operation} could not complete after {attempts} attempts due to contention",
            attempts=attempts,
        )
        self.attempts = attempts
