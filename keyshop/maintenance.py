"""
Inventory consistency jobs. Not part of the normal request path.

- repair_orphans: keys whose is_assigned flag disagrees with their order
  link, or whose order is gone, are put back into the pool.
- dedupe_keys: for stores created without the unique constraint, collapse
  rows sharing a key value to one survivor.

Both write a digital_keys snapshot first when a snapshot directory is set.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Collection, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .infra.sql import Gated
from .model.db import DigitalKey, Order
from .model.keys import KeyInventoryStore
from .model.snapshot import SnapshotInfo, export_tables

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    repaired: List[int] = field(default_factory=list)
    deleted: List[int] = field(default_factory=list)
    groups: int = 0
    snapshot: Optional[SnapshotInfo] = None

    def as_dict(self) -> dict:
        return {
            "repaired": self.repaired,
            "deleted": self.deleted,
            "groups": self.groups,
            "snapshot": self.snapshot.path if self.snapshot else None,
        }


def choose_survivor(instances: Sequence[DigitalKey],
                    live_order_ids: Collection[int]) -> DigitalKey:
    """
    Which row of a duplicate group stays: one assigned to an order that
    exists, else the oldest by creation time; ties go to the lowest id.
    """
    def age(k: DigitalKey):
        return (k.created_at, k.id)

    assigned = [k for k in instances
                if k.is_assigned and k.assigned_to_order_id in live_order_ids]
    pool = assigned or list(instances)
    return min(pool, key=age)


class InventoryMaintenance:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, snapshot_dir: Optional[str] = None) -> None:
        self.sessions = sessions
        self.gated = gated
        self.snapshot_dir = snapshot_dir

    async def _snapshot(self, db: AsyncSession) -> Optional[SnapshotInfo]:
        if not self.snapshot_dir:
            return None
        return await export_tables(db, ["digital_keys"], self.snapshot_dir)

    async def find_orphans(self) -> List[DigitalKey]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    return await KeyInventoryStore(db).find_orphans()

    async def repair_orphans(self) -> RepairReport:
        report = RepairReport()
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    orphans = await keys.find_orphans()
                    if not orphans:
                        return report
                    report.snapshot = await self._snapshot(db)
                    for k in orphans:
                        logger.warning(
                            "repairing orphaned key %s (is_assigned=%s, "
                            "order=%s)",
                            k.id, k.is_assigned, k.assigned_to_order_id,
                        )
                        keys.mark_available(k)
                        report.repaired.append(k.id)
        logger.info("repaired %d orphaned key(s)", len(report.repaired))
        return report

    async def dedupe_keys(self) -> RepairReport:
        report = RepairReport()
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    keys = KeyInventoryStore(db)
                    values = await keys.duplicate_values()
                    if not values:
                        return report
                    report.snapshot = await self._snapshot(db)
                    for value in values:
                        instances = await keys.instances_of(value)
                        order_ids = {k.assigned_to_order_id
                                     for k in instances
                                     if k.assigned_to_order_id is not None}
                        live = set()
                        if order_ids:
                            live = set((await db.execute(
                                select(Order.id)
                                .where(Order.id.in_(order_ids))
                            )).scalars().all())
                        keep = choose_survivor(instances, live)
                        drop = [k for k in instances if k is not keep]
                        for k in drop:
                            if keep.product_id is None and k.product_id:
                                keep.product_id = k.product_id
                        await keys.delete_ids([k.id for k in drop])
                        report.deleted.extend(k.id for k in drop)
                        report.groups += 1
                        logger.info("key value %r: kept %s, deleted %s",
                                    value, keep.id, [k.id for k in drop])
        return report
