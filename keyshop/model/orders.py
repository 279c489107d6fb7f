from __future__ import annotations
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order
from ..errors import InvalidTransitionError, ValidationError
from ..helpers import now_ts

PENDING = "pending"
AWAITING_CONFIRMATION = "awaiting_confirmation"
PAID = "paid"
DELIVERED = "delivered"
CANCELLED = "cancelled"

STATUSES = (PENDING, AWAITING_CONFIRMATION, PAID, DELIVERED, CANCELLED)

# pending -> awaiting_confirmation -> paid -> delivered,
# and any non-terminal status -> cancelled
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({AWAITING_CONFIRMATION, CANCELLED}),
    AWAITING_CONFIRMATION: frozenset({PAID, CANCELLED}),
    PAID: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return not TRANSITIONS.get(status)


class OrderStore:
    """Order rows. Like the key store, runs inside the caller's
    transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, user_id: int, product_id: int) -> Order:
        ts = now_ts()
        order = Order(
            user_id=user_id,
            product_id=product_id,
            status=PENDING,
            created_at=ts,
            updated_at=ts,
        )
        self.db.add(order)
        await self.db.flush()
        return order

    async def get(self, order_id: int, *, lock: bool = False
                  ) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        return (await self.db.execute(stmt)).scalars().first()

    async def list_orders(self, *, status: Optional[str] = None,
                          limit: int = 200) -> List[Order]:
        stmt = select(Order)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
        return list(
            (await self.db.execute(stmt.limit(limit))).scalars().all()
        )

    def transition(self, order: Order, new_status: str) -> str:
        """Validate and apply a status edge. Returns the old status."""
        if new_status not in STATUSES:
            raise ValidationError(f"unknown order status: {new_status!r}")
        old = order.status
        if not can_transition(old, new_status):
            raise InvalidTransitionError(order.id, old, new_status)
        ts = now_ts()
        order.status = new_status
        order.updated_at = ts
        if new_status == PAID:
            order.paid_at = ts
        return old
