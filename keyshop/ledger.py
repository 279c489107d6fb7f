"""
Order ledger: order lifecycle on top of OrderStore, plus the status-change
event that drives auto-assignment.

Events are delivered in-line, after the status change has committed and
before the ledger call returns. A failing listener is logged; the
committed status stays.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .assignment import attach_keys, manual_key_values
from .errors import OrderNotFoundError, ValidationError
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import DigitalKey, Order
from .model.keys import KeyInventoryStore
from .model import orders as st
from .model.orders import OrderStore

logger = logging.getLogger(__name__)

TRIGGER_PAYMENT = "payment"
TRIGGER_STATUS_CHANGE = "status_change"


@dataclass(frozen=True)
class StatusChange:
    order_id: int
    old_status: str
    new_status: str
    # which code path moved the order: payment | status_change
    trigger: str


Listener = Callable[[StatusChange], Awaitable[Any]]
# runs inside the status-change transaction, after the transition
InTransaction = Callable[[AsyncSession, Order], Awaitable[Any]]


class OrderLedger:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ----------------------------
    # reads
    # ----------------------------
    async def find_by_id(self, order_id: int) -> Optional[Order]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    return await OrderStore(db).get(order_id)

    async def get_keys_for_order(self, order_id: int) -> List[DigitalKey]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    return await KeyInventoryStore(db).keys_for_order(
                        order_id
                    )

    async def get_with_keys(
        self, order_id: int
    ) -> Tuple[Order, List[DigitalKey]]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    order = await OrderStore(db).get(order_id)
                    if order is None:
                        raise OrderNotFoundError(order_id)
                    keys = await KeyInventoryStore(db).keys_for_order(
                        order_id
                    )
        return order, keys

    async def list_with_keys(
        self, *, status: Optional[str] = None, limit: int = 200
    ) -> List[Tuple[Order, List[DigitalKey]]]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    orders = await OrderStore(db).list_orders(
                        status=status, limit=max(1, min(limit, 500))
                    )
                    by_order = await KeyInventoryStore(db).keys_for_orders(
                        [o.id for o in orders]
                    )
        return [(o, by_order[o.id]) for o in orders]

    # ----------------------------
    # writes
    # ----------------------------
    async def create(self, user_id: int, product_id: int) -> Order:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    order = await OrderStore(db).create(user_id, product_id)
        logger.info("order %s created for product %s", order.id, product_id)
        return order

    async def submit_payment(
        self,
        order_id: int,
        method: str,
        transaction_id: str,
        sender: Optional[str] = None,
    ) -> Order:
        method = (method or "").strip()
        transaction_id = (transaction_id or "").strip()
        if not method or not transaction_id:
            raise ValidationError(
                "payment method and transaction id are required"
            )

        def evidence(order: Order) -> None:
            order.payment_method = method
            order.transaction_id = transaction_id
            order.payment_sender = (sender or "").strip() or None

        return await self._change(
            order_id, st.AWAITING_CONFIRMATION, TRIGGER_PAYMENT,
            before=evidence,
        )

    async def confirm_payment(self, order_id: int) -> Order:
        """Admin confirms out-of-band payment: awaiting_confirmation ->
        paid. Fires the payment trigger."""
        return await self._change(order_id, st.PAID, TRIGGER_PAYMENT)

    async def confirm_payment_with_keys(
        self, order_id: int, key_values: List[str]
    ) -> Tuple[Order, List[DigitalKey]]:
        """Confirm payment and bind the given literal keys in one
        transaction. Any rejected key leaves the order where it was.
        Listeners see the order only once its keys are attached."""
        values = manual_key_values(key_values)
        attached: List[DigitalKey] = []

        async def attach(db: AsyncSession, order: Order) -> None:
            attached.extend(await attach_keys(db, order, values))

        order = await self._change(
            order_id, st.PAID, TRIGGER_PAYMENT, within=attach,
        )
        return order, attached

    async def set_status(self, order_id: int, new_status: str) -> Order:
        return await self._change(
            order_id, new_status, TRIGGER_STATUS_CHANGE
        )

    async def _change(
        self,
        order_id: int,
        new_status: str,
        trigger: str,
        before: Optional[Callable[[Order], None]] = None,
        within: Optional[InTransaction] = None,
    ) -> Order:
        async with timeit("ledger.set_status"):
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        orders = OrderStore(db)
                        order = await orders.get(order_id, lock=True)
                        if order is None:
                            raise OrderNotFoundError(order_id)
                        old = orders.transition(order, new_status)
                        if before is not None:
                            before(order)
                        if within is not None:
                            await within(db, order)

        logger.info("order %s: %s -> %s (%s)",
                    order_id, old, new_status, trigger)
        await self._emit(StatusChange(order_id, old, new_status, trigger))
        return order

    async def _emit(self, event: StatusChange) -> List[Any]:
        outcomes = []
        for listener in self._listeners:
            try:
                outcomes.append(await listener(event))
            except Exception:
                logger.exception(
                    "status listener failed for order %s (%s -> %s)",
                    event.order_id, event.old_status, event.new_status,
                )
        return outcomes
