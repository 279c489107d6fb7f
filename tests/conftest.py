"""
Shared fixtures.

Every test gets its own SQLite file under tmp_path, built through the same
engine factory and schema setup the server uses.
"""
from __future__ import annotations

import pytest

from keyshop.assignment import AssignmentEngine
from keyshop.autoassign import AutoAssignmentCoordinator
from keyshop.infra import timings
from keyshop.infra.sql import open_database
from keyshop.ledger import OrderLedger
from keyshop.model.config._sql import ConfigStore
from keyshop.model.keys import KeyInventoryStore


@pytest.fixture(autouse=True)
def _clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
async def sql(tmp_path):
    database = open_database(f"sqlite:///{tmp_path / 'keyshop.db'}")
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture
def ledger(sql):
    return OrderLedger(sql.sessions, sql.gated)


@pytest.fixture
def assigner(sql):
    return AssignmentEngine(sql.sessions, sql.gated)


@pytest.fixture
def configs(sql):
    return ConfigStore(sessions=sql.sessions, gated=sql.gated)


@pytest.fixture
async def coordinator(assigner, ledger, configs):
    coord = AutoAssignmentCoordinator(assigner, ledger, configs)
    await coord.load()
    ledger.subscribe(coord.handle_event)
    return coord


@pytest.fixture
def add_keys(sql):
    """add_keys(product_id, ["A", "B"], start=1.0) -> [DigitalKey]

    created_at is start, start+1, ... so FIFO order is the list order."""
    async def _add(product_id, values, start=1.0):
        out = []
        async with sql.sessions() as db:
            async with db.begin():
                keys = KeyInventoryStore(db)
                for i, v in enumerate(values):
                    out.append(await keys.create(v, product_id,
                                                 created_at=start + i))
        return out
    return _add


@pytest.fixture
def paid_order(ledger):
    """Order walked through payment submission and confirmation."""
    async def _paid(product_id, user_id=1):
        order = await ledger.create(user_id, product_id)
        await ledger.submit_payment(order.id, "bank", f"trx-{order.id}")
        return await ledger.confirm_payment(order.id)
    return _paid
