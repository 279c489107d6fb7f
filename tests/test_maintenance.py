"""
Consistency repair, duplicate collapsing and the snapshots written before
either one changes data.
"""
from __future__ import annotations

import os

import pytest
from sqlalchemy import select, text

from keyshop.errors import ValidationError
from keyshop.infra.sql import open_database
from keyshop.maintenance import InventoryMaintenance, choose_survivor
from keyshop.model.db import DigitalKey
from keyshop.model.orders import OrderStore
from keyshop.model.snapshot import export_tables, read_snapshot


# digital_keys as it looked before key_value was made unique
LEGACY_KEYS_DDL = """
CREATE TABLE digital_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key_value VARCHAR(500) NOT NULL,
    product_id INTEGER,
    is_assigned BOOLEAN NOT NULL DEFAULT 0,
    assigned_to_order_id INTEGER REFERENCES orders(id),
    assigned_at FLOAT,
    created_at FLOAT NOT NULL
)
"""


@pytest.fixture
async def legacy_sql(tmp_path):
    database = open_database(f"sqlite:///{tmp_path / 'legacy.db'}")
    async with database.engine.begin() as conn:
        await conn.execute(text(LEGACY_KEYS_DDL))
    await database.create_schema()
    yield database
    await database.dispose()


async def _all_keys(sql):
    async with sql.sessions() as db:
        rows = await db.execute(select(DigitalKey).order_by(DigitalKey.id))
        return list(rows.scalars().all())


def _key(id, created_at, order_id=None, product_id=1):
    return DigitalKey(id=id, key_value="V", product_id=product_id,
                      is_assigned=order_id is not None,
                      assigned_to_order_id=order_id, created_at=created_at)


class TestChooseSurvivor:

    def test_prefers_live_assignment(self):
        old = _key(1, 1.0)
        bound = _key(2, 5.0, order_id=10)
        assert choose_survivor([old, bound], {10}) is bound

    def test_dead_order_does_not_count(self):
        old = _key(1, 1.0)
        bound = _key(2, 5.0, order_id=10)
        assert choose_survivor([bound, old], set()) is old

    def test_oldest_then_lowest_id(self):
        a = _key(7, 2.0)
        b = _key(3, 2.0)
        c = _key(1, 3.0)
        assert choose_survivor([a, b, c], set()) is b


class TestRepairOrphans:

    async def test_nothing_to_do(self, sql, tmp_path):
        maint = InventoryMaintenance(sql.sessions, sql.gated,
                                     str(tmp_path / "snaps"))
        report = await maint.repair_orphans()
        assert report.repaired == []
        assert report.snapshot is None
        assert not os.path.exists(tmp_path / "snaps")

    async def test_repairs_and_snapshots(self, sql, tmp_path, add_keys,
                                         assigner, paid_order):
        ks = await add_keys(1, ["FLAG", "GONE", "GOOD"])
        order = await paid_order(1)
        async with sql.sessions() as db:
            async with db.begin():
                await db.execute(text(
                    "UPDATE digital_keys SET is_assigned = 1 WHERE id = :i"
                ), {"i": ks[0].id})
                await db.execute(text(
                    "UPDATE digital_keys SET is_assigned = 1, "
                    "assigned_to_order_id = 999 WHERE id = :i"
                ), {"i": ks[1].id})
        await assigner.assign_manual(order.id, ["GOOD"])

        maint = InventoryMaintenance(sql.sessions, sql.gated,
                                     str(tmp_path / "snaps"))
        assert [k.id for k in await maint.find_orphans()] == [
            ks[0].id, ks[1].id]

        report = await maint.repair_orphans()
        assert report.repaired == [ks[0].id, ks[1].id]

        keys = {k.key_value: k for k in await _all_keys(sql)}
        assert keys["FLAG"].is_assigned is False
        assert keys["GONE"].assigned_to_order_id is None
        assert keys["GOOD"].assigned_to_order_id == order.id
        assert await maint.find_orphans() == []

        snap = read_snapshot(report.snapshot.path)
        assert snap["header"]["tables"] == ["digital_keys"]
        assert snap["header"]["rows"] == {"digital_keys": 3}
        before = {r["key_value"]: r for r in snap["data"]["digital_keys"]}
        assert before["GONE"]["assigned_to_order_id"] == 999


class TestDedupe:

    async def test_survivor_policy(self, legacy_sql, tmp_path):
        async with legacy_sql.sessions() as db:
            async with db.begin():
                live = await OrderStore(db).create(1, 7)
                rows = [
                    DigitalKey(key_value="DUP-1", product_id=None,
                               is_assigned=False, created_at=1.0),
                    DigitalKey(key_value="DUP-1", product_id=7,
                               is_assigned=True,
                               assigned_to_order_id=live.id,
                               created_at=2.0),
                    DigitalKey(key_value="DUP-1", product_id=7,
                               is_assigned=False, created_at=3.0),
                    DigitalKey(key_value="DUP-2", product_id=7,
                               is_assigned=False, created_at=5.0),
                    DigitalKey(key_value="DUP-2", product_id=None,
                               is_assigned=False, created_at=4.0),
                    DigitalKey(key_value="SOLO", product_id=7,
                               is_assigned=False, created_at=1.0),
                ]
                db.add_all(rows)
                await db.flush()
                ids = [k.id for k in rows]

        maint = InventoryMaintenance(legacy_sql.sessions, legacy_sql.gated,
                                     str(tmp_path / "snaps"))
        report = await maint.dedupe_keys()

        assert report.groups == 2
        assert sorted(report.deleted) == sorted([ids[0], ids[2], ids[3]])
        remaining = {k.id: k for k in await _all_keys(legacy_sql)}
        assert sorted(remaining) == sorted([ids[1], ids[4], ids[5]])
        assert remaining[ids[1]].assigned_to_order_id == live.id
        # survivor picks up the product of a deleted twin
        assert remaining[ids[4]].product_id == 7
        assert report.snapshot.rows == {"digital_keys": 6}

        again = await maint.dedupe_keys()
        assert again.groups == 0
        assert again.as_dict()["snapshot"] is None


class TestSnapshot:

    async def test_unknown_table(self, sql, tmp_path):
        async with sql.sessions() as db:
            with pytest.raises(ValidationError):
                await export_tables(db, ["users"], str(tmp_path))
            with pytest.raises(ValidationError):
                await export_tables(db, [], str(tmp_path))

    async def test_multiple_tables(self, sql, tmp_path, add_keys, ledger):
        await add_keys(2, ["A", "B"])
        order = await ledger.create(5, 2)
        async with sql.sessions() as db:
            info = await export_tables(db, ["orders", "digital_keys"],
                                       str(tmp_path))

        assert os.path.basename(info.path).startswith(
            "snapshot-orders-digital_keys-")
        assert info.rows == {"orders": 1, "digital_keys": 2}
        snap = read_snapshot(info.path)
        assert snap["header"]["snapshot"] == info.id
        assert [r["id"] for r in snap["data"]["orders"]] == [order.id]
        assert sorted(r["key_value"] for r in snap["data"]["digital_keys"]) \
            == ["A", "B"]
