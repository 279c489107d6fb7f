# model/keys.py
"""
Key inventory store: persisted digital keys and their assignment state.

The store works inside the caller's transaction and never commits. Every
method expects `db` to already be inside `db.begin()`; services own the
transaction boundary (and the DB gate).

`mark_assigned` / `mark_available` are the only sanctioned mutators of
`is_assigned` / `assigned_to_order_id` and always update both together.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func, delete, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import DigitalKey, Order
from ..errors import DuplicateKeyError, ValidationError
from ..helpers import now_ts


class KeyInventoryStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    async def find_available_key(
        self, product_id: int, *, lock: bool = True
    ) -> Optional[DigitalKey]:
        """
        Oldest unassigned key of `product_id` (created_at, then id).
        With lock=True the row is read FOR UPDATE so a second transaction
        cannot pick it before this one commits.
        """
        stmt = (
            select(DigitalKey)
            .where(
                DigitalKey.product_id == product_id,
                DigitalKey.is_assigned.is_(False),
            )
            .order_by(DigitalKey.created_at.asc(), DigitalKey.id.asc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        return (await self.db.execute(stmt)).scalars().first()

    async def get(self, key_id: int, *, lock: bool = False
                  ) -> Optional[DigitalKey]:
        stmt = select(DigitalKey).where(DigitalKey.id == key_id)
        if lock:
            stmt = stmt.with_for_update()
        return (await self.db.execute(stmt)).scalars().first()

    async def find_by_value(self, key_value: str, *, lock: bool = False
                            ) -> Optional[DigitalKey]:
        stmt = select(DigitalKey).where(DigitalKey.key_value == key_value)
        if lock:
            stmt = stmt.with_for_update()
        return (await self.db.execute(stmt)).scalars().first()

    async def keys_for_order(self, order_id: int) -> List[DigitalKey]:
        rows = await self.db.execute(
            select(DigitalKey)
            .where(DigitalKey.assigned_to_order_id == order_id)
            .order_by(DigitalKey.id.asc())
        )
        return list(rows.scalars().all())

    async def keys_for_orders(
        self, order_ids: Sequence[int]
    ) -> Dict[int, List[DigitalKey]]:
        out: Dict[int, List[DigitalKey]] = {oid: [] for oid in order_ids}
        if not order_ids:
            return out
        rows = await self.db.execute(
            select(DigitalKey)
            .where(DigitalKey.assigned_to_order_id.in_(list(order_ids)))
            .order_by(DigitalKey.id.asc())
        )
        for k in rows.scalars().all():
            out[k.assigned_to_order_id].append(k)
        return out

    async def list_keys(self, product_id: Optional[int] = None,
                        limit: int = 500) -> List[DigitalKey]:
        stmt = select(DigitalKey)
        if product_id is not None:
            stmt = stmt.where(DigitalKey.product_id == product_id)
        stmt = stmt.order_by(
            DigitalKey.created_at.desc(), DigitalKey.id.desc()
        ).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def create(
        self,
        key_value: str,
        product_id: Optional[int],
        *,
        created_at: Optional[float] = None,
    ) -> DigitalKey:
        """
        Insert an available key. Uniqueness of key_value is global, not
        per product. A losing race against a concurrent insert of the
        same value also ends in DuplicateKeyError (and leaves the
        surrounding transaction to be rolled back).
        """
        key_value = (key_value or "").strip()
        if not key_value:
            raise ValidationError("key value must not be blank")
        if await self.find_by_value(key_value) is not None:
            raise DuplicateKeyError(key_value)

        key = DigitalKey(
            key_value=key_value,
            product_id=product_id,
            is_assigned=False,
            assigned_to_order_id=None,
            created_at=created_at if created_at is not None else now_ts(),
        )
        self.db.add(key)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateKeyError(key_value) from e
        return key

    def mark_assigned(self, key: DigitalKey, order_id: int) -> DigitalKey:
        if order_id is None:
            raise ValueError("order_id is required to assign a key")
        key.is_assigned = True
        key.assigned_to_order_id = order_id
        key.assigned_at = now_ts()
        return key

    def mark_available(self, key: DigitalKey) -> DigitalKey:
        key.is_assigned = False
        key.assigned_to_order_id = None
        key.assigned_at = None
        return key

    async def delete_ids(self, key_ids: Sequence[int]) -> int:
        if not key_ids:
            return 0
        res = await self.db.execute(
            delete(DigitalKey).where(DigitalKey.id.in_(list(key_ids)))
        )
        return int(res.rowcount or 0)

    # ------------------------------------------------------------------
    # counters
    # ------------------------------------------------------------------
    async def count_available(self, product_id: int) -> int:
        return int((await self.db.execute(
            select(func.count(DigitalKey.id)).where(
                DigitalKey.product_id == product_id,
                DigitalKey.is_assigned.is_(False),
            )
        )).scalar_one())

    async def count_total(self, product_id: Optional[int] = None) -> int:
        stmt = select(func.count(DigitalKey.id))
        if product_id is not None:
            stmt = stmt.where(DigitalKey.product_id == product_id)
        return int((await self.db.execute(stmt)).scalar_one())

    async def count_assigned(self, product_id: Optional[int] = None) -> int:
        stmt = select(func.count(DigitalKey.id)).where(
            DigitalKey.is_assigned.is_(True)
        )
        if product_id is not None:
            stmt = stmt.where(DigitalKey.product_id == product_id)
        return int((await self.db.execute(stmt)).scalar_one())

    async def has_stock(self, product_id: int) -> bool:
        return await self.count_available(product_id) > 0

    # ------------------------------------------------------------------
    # consistency scans
    # ------------------------------------------------------------------
    async def find_orphans(self) -> List[DigitalKey]:
        """
        Keys whose assignment flag disagrees with their order link, or
        that point at an order which no longer exists.
        """
        stmt = (
            select(DigitalKey)
            .outerjoin(Order, Order.id == DigitalKey.assigned_to_order_id)
            .where(or_(
                and_(DigitalKey.is_assigned.is_(True),
                     DigitalKey.assigned_to_order_id.is_(None)),
                and_(DigitalKey.is_assigned.is_(False),
                     DigitalKey.assigned_to_order_id.is_not(None)),
                and_(DigitalKey.assigned_to_order_id.is_not(None),
                     Order.id.is_(None)),
            ))
            .order_by(DigitalKey.id.asc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def duplicate_values(self) -> List[str]:
        rows = await self.db.execute(
            select(DigitalKey.key_value)
            .group_by(DigitalKey.key_value)
            .having(func.count(DigitalKey.id) > 1)
            .order_by(DigitalKey.key_value)
        )
        return [r[0] for r in rows.all()]

    async def instances_of(self, key_value: str) -> List[DigitalKey]:
        rows = await self.db.execute(
            select(DigitalKey)
            .where(DigitalKey.key_value == key_value)
            .order_by(DigitalKey.created_at.asc(), DigitalKey.id.asc())
        )
        return list(rows.scalars().all())
