# assignment.py
"""
Assignment engine: binds available keys to orders and releases them again.

assign() is the critical section. "Pick the oldest available key of a
product" and "mark it assigned" happen in one transaction with the picked
row read FOR UPDATE. On top of the row lock, assigns for the same product
are serialized by an in-process asyncio.Lock:
  - SQLite has no row locks, so the lock is what keeps two callers from
    reading the same candidate before either commits;
  - on PostgreSQL a waiter behind FOR UPDATE ... LIMIT 1 can come back
    empty once the row it queued on is taken, even though later keys are
    still free. Waiting on the product lock first avoids that.

Every write goes through KeyInventoryStore.mark_assigned/mark_available;
nothing else in the package touches is_assigned/assigned_to_order_id.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import DBAPIError, IntegrityError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import (
    AssignmentError,
    DuplicateKeyError,
    KeyNotFoundError,
    NoAvailableKeyError,
    OrderNotFoundError,
    OrderNotPaidError,
    RetryableAssignmentError,
    ValidationError,
    WrongOrderError,
)
from .helpers import clean_key_values
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import DigitalKey, Order, key_view
from .model.keys import KeyInventoryStore
from .model.orders import DELIVERED, PAID, OrderStore

logger = logging.getLogger(__name__)

ASSIGNED = "assigned"
FAILED = "failed"
IN_PROGRESS = "in_progress"
ALREADY_HAS_KEYS = "already_has_keys"
SKIPPED = "skipped"


@dataclass
class AssignmentResult:
    order_id: Optional[int]
    status: str
    key: Optional[DigitalKey] = None
    error: Optional[AssignmentError] = None
    message: str = ""
    product_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == ASSIGNED

    @property
    def retryable(self) -> bool:
        if self.status == IN_PROGRESS:
            return True
        return bool(self.error is not None and self.error.retryable)

    @classmethod
    def assigned(cls, key: DigitalKey, order_id: int,
                 product_id: int) -> "AssignmentResult":
        return cls(order_id=order_id, status=ASSIGNED, key=key,
                   message="Key assigned", product_id=product_id)

    @classmethod
    def failed(cls, error: AssignmentError, order_id: Optional[int],
               product_id: Optional[int] = None) -> "AssignmentResult":
        return cls(order_id=order_id, status=FAILED, error=error,
                   message=error.message, product_id=product_id)

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "success": self.ok,
            "status": self.status,
            "message": self.message,
            "error": self.error.kind if self.error is not None else None,
            "retryable": self.retryable,
            "key": key_view(self.key) if self.key is not None else None,
        }


class AssignmentEngine:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated
        # one lock per product id ever assigned; never pruned, sized by the
        # catalog rather than by traffic
        self._product_locks: Dict[int, asyncio.Lock] = {}

    def _product_lock(self, product_id: int) -> asyncio.Lock:
        lock = self._product_locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._product_locks[product_id] = lock
        return lock

    # ----------------------------
    # assign
    # ----------------------------
    async def assign(self, product_id: int,
                     order_id: int) -> AssignmentResult:
        """
        Bind the oldest available key of `product_id` to `order_id`.
        Never raises for assignment failures: running out of stock is a
        normal outcome reported as a failed result with
        NoAvailableKeyError, and nothing is written in that case.
        """
        try:
            key = await self._assign_one(product_id, order_id)
        except AssignmentError as e:
            if isinstance(e, NoAvailableKeyError):
                logger.warning("no available key for product %s "
                               "(order %s)", product_id, order_id)
            else:
                logger.warning("assign(product=%s, order=%s) failed: %s",
                               product_id, order_id, e.message)
            return AssignmentResult.failed(e, order_id, product_id)
        logger.info("assigned key %s to order %s (product %s)",
                    key.id, order_id, product_id)
        return AssignmentResult.assigned(key, order_id, product_id)

    async def _assign_one(self, product_id: int,
                          order_id: int) -> DigitalKey:
        async with self._product_lock(product_id):
            async with timeit("assign"):
                async with self.gated():
                    async with self.sessions() as db:
                        try:
                            async with db.begin():
                                order = await OrderStore(db).get(order_id)
                                if order is None:
                                    raise OrderNotFoundError(order_id)
                                keys = KeyInventoryStore(db)
                                key = await keys.find_available_key(
                                    product_id, lock=True
                                )
                                if key is None:
                                    raise NoAvailableKeyError(product_id)
                                keys.mark_assigned(key, order_id)
                        except (IntegrityError, ProgrammingError):
                            raise
                        except DBAPIError as e:
                            # begin() already rolled back; nothing half-set
                            raise RetryableAssignmentError(
                                f"assign transaction for order {order_id} "
                                f"did not complete: {e.__class__.__name__}"
                            ) from e
        return key

    # ----------------------------
    # manual assignment
    # ----------------------------
    async def assign_manual(self, order_id: int,
                            key_values: Iterable[str]) -> List[DigitalKey]:
        """
        Attach literal key strings to a paid order, all or nothing. See
        attach_keys for the per-string rules.
        """
        values = manual_key_values(key_values)
        async with timeit("assign_manual"):
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        order = await OrderStore(db).get(order_id)
                        if order is None:
                            raise OrderNotFoundError(order_id)
                        if order.status not in (PAID, DELIVERED):
                            raise OrderNotPaidError(order_id, order.status)
                        out = await attach_keys(db, order, values)

        logger.info("manually assigned %d key(s) to order %s",
                    len(out), order_id)
        return out

    # ----------------------------
    # release / revoke
    # ----------------------------
    async def release(self, order_id: int, key_id: int) -> DigitalKey:
        """
        Return a key to the pool. The key must currently belong to
        `order_id`; released keys are kept and can be picked again.
        """
        async with timeit("release"):
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        if await OrderStore(db).get(order_id) is None:
                            raise OrderNotFoundError(order_id)
                        keys = KeyInventoryStore(db)
                        key = await keys.get(key_id, lock=True)
                        if key is None:
                            raise KeyNotFoundError(key_id)
                        if key.assigned_to_order_id != order_id:
                            logger.warning(
                                "release refused: key %s is bound to %s, "
                                "not order %s",
                                key_id, key.assigned_to_order_id, order_id,
                            )
                            raise WrongOrderError(
                                key_id, order_id, key.assigned_to_order_id
                            )
                        keys.mark_available(key)
        logger.info("released key %s from order %s", key_id, order_id)
        return key

    async def revoke(self, key_id: int) -> DigitalKey:
        """Admin release without the ownership check."""
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    key = await keys.get(key_id, lock=True)
                    if key is None:
                        raise KeyNotFoundError(key_id)
                    previous = key.assigned_to_order_id
                    keys.mark_available(key)
        if previous is not None:
            logger.info("revoked key %s from order %s", key_id, previous)
        return key

    # ----------------------------
    # stock + inventory
    # ----------------------------
    async def stock(self, product_id: int,
                    key_values: Iterable[str]) -> List[DigitalKey]:
        """Add available keys to a product; all or nothing."""
        values = manual_key_values(key_values)
        seen = set()
        for v in values:
            if v in seen:
                raise DuplicateKeyError(v)
            seen.add(v)

        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    created = [await keys.create(v, product_id)
                               for v in values]
        logger.info("stocked %d key(s) for product %s",
                    len(created), product_id)
        return created

    async def inventory(self, product_id: int) -> dict:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    total = await keys.count_total(product_id)
                    assigned = await keys.count_assigned(product_id)
                    available = await keys.count_available(product_id)
        return {
            "product_id": product_id,
            "total": total,
            "assigned": assigned,
            "available": available,
            "in_stock": available > 0,
        }

    async def list_keys(self, product_id: Optional[int] = None,
                        limit: int = 500) -> List[DigitalKey]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    return await KeyInventoryStore(db).list_keys(
                        product_id, limit=max(1, min(limit, 5000))
                    )

    async def counts(self) -> Dict[str, int]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    total = await keys.count_total()
                    assigned = await keys.count_assigned()
        return {
            "total_keys": total,
            "assigned_keys": assigned,
            "available_keys": total - assigned,
        }


def manual_key_values(key_values: Iterable[str]) -> List[str]:
    values = clean_key_values(key_values)
    if not values or any(not v for v in values):
        raise ValidationError("at least one non-blank key is required")
    return values


async def attach_keys(db: AsyncSession, order: Order,
                      values: Sequence[str]) -> List[DigitalKey]:
    """
    Bind literal key strings to `order` inside the caller's transaction.
    Existing keys are attached in place (product filled in when missing);
    unknown strings become new keys already bound to the order. Keys
    already bound to this order are left as they are. A key bound to a
    different order raises WrongOrderError; the caller's rollback undoes
    whatever was attached before it.
    """
    keys = KeyInventoryStore(db)
    out: List[DigitalKey] = []
    for value in values:
        key = await keys.find_by_value(value, lock=True)
        if key is None:
            key = await keys.create(value, order.product_id)
        elif key.is_assigned and key.assigned_to_order_id != order.id:
            raise WrongOrderError(key.id, order.id, key.assigned_to_order_id)
        if key.product_id is None:
            key.product_id = order.product_id
        elif key.product_id != order.product_id:
            logger.warning(
                "key %s belongs to product %s, attached to order %s "
                "of product %s",
                key.id, key.product_id, order.id, order.product_id,
            )
        if key.assigned_to_order_id != order.id:
            keys.mark_assigned(key, order.id)
        if key not in out:
            out.append(key)
        await db.flush()
    return out
