from __future__ import annotations
from typing import Optional


class KeyshopError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(KeyshopError):
    kind = "validation"


class InvalidTransitionError(KeyshopError):
    kind = "invalid_transition"

    def __init__(self, order_id: int, current: str, requested: str) -> None:
        super().__init__(
            f"order {order_id}: cannot move from {current!r} to {requested!r}"
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested


# ----------------------------
# Assignment errors
# ----------------------------
class AssignmentError(KeyshopError):
    kind = "assignment"


class NoAvailableKeyError(AssignmentError):
    # expected outcome: out of stock, order stays paid without keys
    kind = "no_available_key"

    def __init__(self, product_id: Optional[int]) -> None:
        super().__init__(f"no available keys for product {product_id}")
        self.product_id = product_id


class WrongOrderError(AssignmentError):
    kind = "wrong_order"

    def __init__(self, key_id: int, order_id: int,
                 owner_id: Optional[int]) -> None:
        super().__init__(
            f"key {key_id} does not belong to order {order_id}"
        )
        self.key_id = key_id
        self.order_id = order_id
        self.owner_id = owner_id


class DuplicateKeyError(AssignmentError):
    kind = "duplicate_key"

    def __init__(self, key_value: str) -> None:
        super().__init__(f"key value already exists: {key_value!r}")
        self.key_value = key_value


class OrderNotFoundError(AssignmentError):
    kind = "order_not_found"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class KeyNotFoundError(AssignmentError):
    kind = "key_not_found"

    def __init__(self, key_id: int) -> None:
        super().__init__(f"key {key_id} not found")
        self.key_id = key_id


class OrderNotPaidError(AssignmentError):
    kind = "order_not_paid"

    def __init__(self, order_id: int, status: str) -> None:
        super().__init__(
            f"order {order_id} must be paid before keys are assigned "
            f"(status={status})"
        )
        self.order_id = order_id
        self.status = status


class RetryableAssignmentError(AssignmentError):
    """Transaction could not complete (lock wait, timeout, dropped
    connection). Nothing was written; the caller may try again."""
    kind = "retryable"
    retryable = True
