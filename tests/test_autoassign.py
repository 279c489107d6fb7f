"""
Auto-assignment coordinator: triggers, idempotence, in-flight guard,
bulk runs, durable settings and statistics.
"""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from keyshop.assignment import (
    ALREADY_HAS_KEYS,
    ASSIGNED,
    FAILED,
    IN_PROGRESS,
    SKIPPED,
)
from keyshop.autoassign import (
    CFG_CONCURRENT_LIMIT,
    CFG_ENABLED,
    CFG_STRATEGY,
    CFG_TRIGGER_ON_PAYMENT,
    CFG_TRIGGER_ON_STATUS_CHANGE,
    AutoAssignmentCoordinator,
)
from keyshop.errors import NoAvailableKeyError, ValidationError
from keyshop.ledger import TRIGGER_PAYMENT
from keyshop.model import orders as st


class TestDefaults:

    async def test_seeded_and_disabled(self, coordinator, configs):
        assert coordinator.enabled is False
        stored = await coordinator.get_config()
        assert stored[CFG_ENABLED]["value"] is False
        assert stored[CFG_TRIGGER_ON_PAYMENT]["value"] is True
        assert stored[CFG_STRATEGY]["value"] == "first_available"
        assert stored[CFG_CONCURRENT_LIMIT]["value"] == 5
        assert stored[CFG_CONCURRENT_LIMIT]["type"] == "number"

    async def test_disabled_skips(self, coordinator, ledger, add_keys,
                                  paid_order):
        await add_keys(1, ["K1"])
        order = await paid_order(1)
        assert await ledger.get_keys_for_order(order.id) == []

        result = await coordinator.on_order_status_changed(order.id, st.PAID)
        assert result.status == SKIPPED
        assert (await coordinator.process_order(order.id)).status == SKIPPED


class TestTriggers:

    async def test_payment_confirmation_assigns(self, coordinator, ledger,
                                                add_keys, paid_order):
        await add_keys(1, ["K1", "K2"])
        await coordinator.toggle(True)

        order = await paid_order(1)

        keys = await ledger.get_keys_for_order(order.id)
        assert [k.key_value for k in keys] == ["K1"]

    async def test_status_change_path(self, coordinator, ledger, add_keys):
        await add_keys(1, ["K1"])
        await coordinator.toggle(True)
        order = await ledger.create(1, 1)
        await ledger.set_status(order.id, st.AWAITING_CONFIRMATION)
        await ledger.set_status(order.id, st.PAID)
        assert len(await ledger.get_keys_for_order(order.id)) == 1

    async def test_non_paid_status_ignored(self, coordinator, add_keys,
                                           ledger):
        await coordinator.toggle(True)
        order = await ledger.create(1, 1)
        result = await coordinator.on_order_status_changed(
            order.id, st.CANCELLED)
        assert result.status == SKIPPED

    async def test_trigger_flags(self, coordinator, ledger, add_keys,
                                 paid_order):
        await add_keys(1, ["K1"])
        await coordinator.toggle(True)
        await coordinator.update_config(CFG_TRIGGER_ON_PAYMENT, False)

        order = await paid_order(1)
        assert await ledger.get_keys_for_order(order.id) == []

        await coordinator.update_config(CFG_TRIGGER_ON_STATUS_CHANGE, False)
        skipped = await coordinator.on_order_status_changed(order.id, st.PAID)
        assert skipped.status == SKIPPED

        # explicit run ignores trigger flags
        result = await coordinator.process_order(order.id)
        assert result.status == ASSIGNED
        assert result.key.key_value == "K1"

    async def test_second_trigger_reports_existing_keys(
            self, coordinator, ledger, add_keys, paid_order):
        await add_keys(1, ["K1", "K2"])
        await coordinator.toggle(True)
        order = await paid_order(1)

        again = await coordinator.on_order_status_changed(
            order.id, st.PAID, trigger=TRIGGER_PAYMENT)
        assert again.status == ALREADY_HAS_KEYS
        assert len(await ledger.get_keys_for_order(order.id)) == 1

    async def test_out_of_stock_clears_in_flight(self, coordinator, ledger,
                                                 paid_order):
        await coordinator.toggle(True)
        order = await paid_order(3)

        result = await coordinator.process_order(order.id)
        assert result.status == FAILED
        assert isinstance(result.error, NoAvailableKeyError)
        assert coordinator.in_flight == set()
        assert (await ledger.find_by_id(order.id)).status == st.PAID

    async def test_missing_order(self, coordinator):
        await coordinator.toggle(True)
        result = await coordinator.process_order(4242)
        assert result.status == FAILED
        assert result.error.kind == "order_not_found"
        assert coordinator.in_flight == set()

    async def test_database_error_on_read_is_retryable(
            self, coordinator, ledger, paid_order, monkeypatch):
        await coordinator.toggle(True)
        order = await paid_order(1)

        async def locked(order_id):
            raise OperationalError("SELECT", {},
                                   Exception("database is locked"))
        monkeypatch.setattr(ledger, "get_with_keys", locked)

        result = await coordinator.process_order(order.id)
        assert result.status == FAILED
        assert result.error.kind == "retryable"
        assert result.retryable is True
        assert coordinator.in_flight == set()

    async def test_constraint_error_on_assign_is_final(
            self, coordinator, assigner, ledger, add_keys, paid_order,
            monkeypatch):
        await add_keys(1, ["K1"])
        order = await paid_order(1)
        await coordinator.toggle(True)

        async def conflict(product_id, order_id):
            raise IntegrityError("UPDATE", {},
                                 Exception("constraint failed"))
        monkeypatch.setattr(assigner, "assign", conflict)

        result = await coordinator.process_order(order.id)
        assert result.status == FAILED
        assert result.error.kind == "assignment"
        assert result.retryable is False
        assert coordinator.in_flight == set()
        assert await ledger.get_keys_for_order(order.id) == []


class TestInFlight:

    async def test_held_order_is_in_progress(self, coordinator, add_keys,
                                             ledger, paid_order):
        await add_keys(1, ["K1"])
        await coordinator.toggle(True)
        await coordinator.update_config(CFG_TRIGGER_ON_PAYMENT, False)
        order = await paid_order(1)

        coordinator.in_flight.add(order.id)
        result = await coordinator.process_order(order.id)
        assert result.status == IN_PROGRESS
        assert result.retryable
        # the guard belongs to the first caller
        assert order.id in coordinator.in_flight

    async def test_simultaneous_triggers(self, coordinator, ledger, add_keys,
                                         paid_order):
        await add_keys(1, ["K1", "K2"])
        await coordinator.toggle(True)
        await coordinator.update_config(CFG_TRIGGER_ON_PAYMENT, False)
        order = await paid_order(1)

        first, second = await asyncio.gather(
            coordinator.on_order_status_changed(order.id, st.PAID),
            coordinator.on_order_status_changed(order.id, st.PAID),
        )
        assert {first.status, second.status} == {ASSIGNED, IN_PROGRESS}
        assert len(await ledger.get_keys_for_order(order.id)) == 1
        assert coordinator.in_flight == set()


class TestBulk:

    async def test_per_order_results(self, coordinator, ledger, assigner,
                                     add_keys, paid_order):
        await add_keys(1, ["K1"])
        await add_keys(2, ["K2"])
        await coordinator.toggle(True)
        await coordinator.update_config(CFG_TRIGGER_ON_PAYMENT, False)

        served = await paid_order(2)
        await assigner.assign(2, served.id)
        ready = await paid_order(1)
        dry = await paid_order(1)
        pending = await ledger.create(1, 1)

        orders = [await ledger.find_by_id(o.id)
                  for o in (served, ready, dry, pending)]
        results = await coordinator.bulk_assign(orders)

        assert [r.status for r in results] == [
            ALREADY_HAS_KEYS, ASSIGNED, FAILED, SKIPPED]
        assert results[1].key.key_value == "K1"
        assert results[2].error.kind == "no_available_key"

    async def test_disabled_batch(self, coordinator, ledger, paid_order):
        order = await paid_order(1)
        results = await coordinator.bulk_assign([order])
        assert [r.status for r in results] == [SKIPPED]


class TestSettings:

    async def test_toggle_survives_restart(self, coordinator, assigner,
                                           ledger, configs):
        await coordinator.toggle(True, actor_id=9)
        assert await configs.get_config(CFG_ENABLED) is True

        fresh = AutoAssignmentCoordinator(assigner, ledger, configs)
        await fresh.load()
        assert fresh.enabled is True

    @pytest.mark.parametrize("key,value", [
        (CFG_ENABLED, "yes"),
        (CFG_STRATEGY, "random"),
        (CFG_CONCURRENT_LIMIT, 0),
        (CFG_CONCURRENT_LIMIT, 2.5),
        (CFG_CONCURRENT_LIMIT, True),
        ("auto_assignment_bogus", 1),
    ])
    async def test_rejected_values(self, coordinator, key, value):
        with pytest.raises(ValidationError):
            await coordinator.update_config(key, value)

    async def test_limit_applies_now(self, coordinator, configs):
        assert await coordinator.update_config(CFG_CONCURRENT_LIMIT, 2) == 2
        assert coordinator.config.concurrent_limit == 2
        assert await configs.get_config(CFG_CONCURRENT_LIMIT) == 2

    async def test_bad_stored_value_falls_back(self, coordinator, assigner,
                                               ledger, configs):
        await configs.set_config(CFG_STRATEGY, "random",
                                 category="auto_assignment")
        fresh = AutoAssignmentCoordinator(assigner, ledger, configs)
        await fresh.load()
        assert fresh.config.strategy == "first_available"


class TestStatistics:

    async def test_snapshot(self, coordinator, add_keys, paid_order):
        await add_keys(1, ["K1", "K2", "K3"])
        await coordinator.toggle(True)
        await paid_order(1)

        stats = await coordinator.statistics()
        assert stats["enabled"] is True
        assert stats["total_keys"] == 3
        assert stats["assigned_keys"] == 1
        assert stats["available_keys"] == 2
        assert stats["in_flight_count"] == 0
        assert stats["concurrent_limit"] == 5
        assert stats["timings"]["assign"]["n"] == 1
