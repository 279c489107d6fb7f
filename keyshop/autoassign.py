# autoassign.py
"""
Auto-assignment coordinator.

Decides *when* the assignment engine runs: on order status changes to
`paid` (payment confirmation or a plain status update, each behind its own
policy flag), on explicit admin requests and in bulk.

Runtime state is owned by the instance built at startup:
  - `enabled`: mirrored to the config store so it survives restarts;
  - `in_flight`: order ids currently being processed. Check-and-add happens
    without an await in between, so two triggers for the same order cannot
    both get through; the id is always removed when processing ends;
  - a semaphore sized by `auto_assignment_concurrent_limit` that caps how
    many engine calls run at once.

The in-flight set only de-duplicates work per order. Handing a key to at
most one order is the engine's job (row lock + per-product lock).
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.exc import DBAPIError, IntegrityError, ProgrammingError

from .assignment import (
    ALREADY_HAS_KEYS,
    IN_PROGRESS,
    SKIPPED,
    AssignmentEngine,
    AssignmentResult,
)
from .errors import (
    AssignmentError,
    RetryableAssignmentError,
    ValidationError,
)
from .infra import timings
from .ledger import (
    TRIGGER_PAYMENT,
    TRIGGER_STATUS_CHANGE,
    OrderLedger,
    StatusChange,
)
from .model.db import Order
from .model.orders import PAID

logger = logging.getLogger(__name__)

CATEGORY = "auto_assignment"

CFG_ENABLED = "auto_assignment_enabled"
CFG_TRIGGER_ON_PAYMENT = "auto_assignment_trigger_on_payment"
CFG_TRIGGER_ON_STATUS_CHANGE = "auto_assignment_trigger_on_status_change"
CFG_STRATEGY = "auto_assignment_strategy"
CFG_CONCURRENT_LIMIT = "auto_assignment_concurrent_limit"

STRATEGY_FIRST_AVAILABLE = "first_available"
STRATEGIES = (STRATEGY_FIRST_AVAILABLE,)

DEFAULTS = [
    {
        "key": CFG_ENABLED,
        "value": False,
        "description": "Enable automatic key assignment for paid orders",
        "category": CATEGORY,
    },
    {
        "key": CFG_TRIGGER_ON_PAYMENT,
        "value": True,
        "description": "Trigger auto-assignment when payment is confirmed",
        "category": CATEGORY,
    },
    {
        "key": CFG_TRIGGER_ON_STATUS_CHANGE,
        "value": True,
        "description":
            "Trigger auto-assignment when order status changes to paid",
        "category": CATEGORY,
    },
    {
        "key": CFG_STRATEGY,
        "value": STRATEGY_FIRST_AVAILABLE,
        "description": "Key selection strategy for auto-assignment",
        "category": CATEGORY,
    },
    {
        "key": CFG_CONCURRENT_LIMIT,
        "value": 5,
        "description": "Maximum concurrent auto-assignments",
        "category": CATEGORY,
    },
]


@dataclass
class AutoAssignmentConfig:
    enabled: bool = False
    trigger_on_payment: bool = True
    trigger_on_status_change: bool = True
    strategy: str = STRATEGY_FIRST_AVAILABLE
    concurrent_limit: int = 5


def _check(key: str, value: Any) -> Any:
    """Type-check a value for one of the auto-assignment keys."""
    if key in (CFG_ENABLED, CFG_TRIGGER_ON_PAYMENT,
               CFG_TRIGGER_ON_STATUS_CHANGE):
        if not isinstance(value, bool):
            raise ValidationError(f"{key} must be a boolean")
        return value
    if key == CFG_STRATEGY:
        if value not in STRATEGIES:
            raise ValidationError(
                f"{key} must be one of {', '.join(STRATEGIES)}"
            )
        return value
    if key == CFG_CONCURRENT_LIMIT:
        if (isinstance(value, bool) or not isinstance(value, (int, float))
                or int(value) != value or value < 1):
            raise ValidationError(f"{key} must be a positive integer")
        return int(value)
    raise ValidationError(f"unknown auto-assignment setting: {key!r}")


class AutoAssignmentCoordinator:
    def __init__(self, engine: AssignmentEngine, ledger: OrderLedger,
                 configs, *,
                 config: Optional[AutoAssignmentConfig] = None) -> None:
        self.engine = engine
        self.ledger = ledger
        self.configs = configs
        self.config = config or AutoAssignmentConfig()
        self.in_flight: Set[int] = set()
        self._gate = asyncio.Semaphore(self.config.concurrent_limit)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ----------------------------
    # config
    # ----------------------------
    async def load(self) -> AutoAssignmentConfig:
        """Seed default settings and hydrate runtime state from them."""
        await self.configs.initialize_defaults(DEFAULTS)
        stored = await self.configs.get_all(CATEGORY)

        def value(key: str, default: Any) -> Any:
            try:
                return _check(key, stored[key]["value"])
            except (KeyError, ValidationError):
                logger.warning("ignoring stored %s, using %r", key, default)
                return default

        d = AutoAssignmentConfig()
        self._apply(AutoAssignmentConfig(
            enabled=value(CFG_ENABLED, d.enabled),
            trigger_on_payment=value(CFG_TRIGGER_ON_PAYMENT,
                                     d.trigger_on_payment),
            trigger_on_status_change=value(CFG_TRIGGER_ON_STATUS_CHANGE,
                                           d.trigger_on_status_change),
            strategy=value(CFG_STRATEGY, d.strategy),
            concurrent_limit=value(CFG_CONCURRENT_LIMIT, d.concurrent_limit),
        ))
        logger.info("auto-assignment loaded: %s", self.config)
        return self.config

    def _apply(self, config: AutoAssignmentConfig) -> None:
        if config.concurrent_limit != self.config.concurrent_limit:
            # in-flight holders keep the old gate until they finish
            self._gate = asyncio.Semaphore(config.concurrent_limit)
        self.config = config

    async def toggle(self, enabled: bool,
                     actor_id: Optional[int] = None) -> bool:
        """Flip the switch now and persist it. Missed events are not
        replayed."""
        enabled = _check(CFG_ENABLED, enabled)
        await self.configs.set_config(CFG_ENABLED, enabled, actor_id,
                                      category=CATEGORY)
        self.config.enabled = enabled
        logger.info("auto-assignment %s",
                    "enabled" if enabled else "disabled")
        return enabled

    async def update_config(self, key: str, value: Any,
                            actor_id: Optional[int] = None) -> Any:
        value = _check(key, value)
        await self.configs.set_config(key, value, actor_id,
                                      category=CATEGORY)
        c = self.config
        self._apply(AutoAssignmentConfig(
            enabled=value if key == CFG_ENABLED else c.enabled,
            trigger_on_payment=(value if key == CFG_TRIGGER_ON_PAYMENT
                                else c.trigger_on_payment),
            trigger_on_status_change=(
                value if key == CFG_TRIGGER_ON_STATUS_CHANGE
                else c.trigger_on_status_change
            ),
            strategy=value if key == CFG_STRATEGY else c.strategy,
            concurrent_limit=(value if key == CFG_CONCURRENT_LIMIT
                              else c.concurrent_limit),
        ))
        return value

    async def get_config(self) -> Dict[str, Dict[str, Any]]:
        return await self.configs.get_all(CATEGORY)

    # ----------------------------
    # triggers
    # ----------------------------
    async def handle_event(self, event: StatusChange) -> AssignmentResult:
        """OrderLedger listener."""
        return await self.on_order_status_changed(
            event.order_id, event.new_status, trigger=event.trigger
        )

    async def on_order_status_changed(
        self, order_id: int, new_status: str,
        trigger: str = TRIGGER_STATUS_CHANGE,
    ) -> AssignmentResult:
        if not self.config.enabled:
            return _skipped(order_id, "Auto-assignment is disabled")
        if new_status != PAID:
            return _skipped(order_id, "Auto-assignment not triggered")
        if trigger == TRIGGER_PAYMENT and not self.config.trigger_on_payment:
            return _skipped(order_id, "Payment trigger is off")
        if (trigger == TRIGGER_STATUS_CHANGE
                and not self.config.trigger_on_status_change):
            return _skipped(order_id, "Status-change trigger is off")
        return await self._process(order_id)

    async def process_order(self, order_id: int) -> AssignmentResult:
        """Admin "assign now": ignores trigger flags, keeps every other
        precondition."""
        if not self.config.enabled:
            return _skipped(order_id, "Auto-assignment is disabled")
        return await self._process(order_id)

    async def bulk_assign(self, orders: Iterable[Order]
                          ) -> List[AssignmentResult]:
        """One result per order; a failing order never stops the batch."""
        orders = list(orders)
        if not self.config.enabled:
            return [_skipped(o.id, "Auto-assignment is disabled")
                    for o in orders]
        results = []
        for order in orders:
            if order.status != PAID:
                results.append(_skipped(order.id, "Order is not paid"))
                continue
            results.append(await self._process(order.id))
        return results

    async def _process(self, order_id: int) -> AssignmentResult:
        if order_id in self.in_flight:
            return AssignmentResult(
                order_id=order_id, status=IN_PROGRESS,
                message="Assignment already in progress for this order",
            )
        self.in_flight.add(order_id)
        try:
            order, keys = await self.ledger.get_with_keys(order_id)
            if order.status != PAID:
                return _skipped(order_id, "Order is not paid")
            if keys:
                return AssignmentResult(
                    order_id=order_id, status=ALREADY_HAS_KEYS,
                    product_id=order.product_id,
                    message="Order already has keys assigned",
                )
            async with self._gate:
                return await self.engine.assign(order.product_id, order_id)
        except AssignmentError as e:
            return AssignmentResult.failed(e, order_id)
        except (IntegrityError, ProgrammingError) as e:
            # constraint or schema problem; retrying will not help
            logger.exception("auto-assign for order %s hit a database error",
                             order_id)
            return AssignmentResult.failed(AssignmentError(
                f"order {order_id}: {e.__class__.__name__}"
            ), order_id)
        except DBAPIError as e:
            logger.warning("auto-assign for order %s did not complete: %s",
                           order_id, e.__class__.__name__)
            return AssignmentResult.failed(RetryableAssignmentError(
                f"order {order_id}: {e.__class__.__name__}"
            ), order_id)
        finally:
            self.in_flight.discard(order_id)

    # ----------------------------
    # observability
    # ----------------------------
    async def statistics(self) -> Dict[str, Any]:
        counts = await self.engine.counts()
        return {
            "enabled": self.config.enabled,
            **counts,
            "in_flight_count": len(self.in_flight),
            "concurrent_limit": self.config.concurrent_limit,
            "strategy": self.config.strategy,
            "timings": timings.aggregates(),
        }


def _skipped(order_id: Optional[int], message: str) -> AssignmentResult:
    return AssignmentResult(order_id=order_id, status=SKIPPED,
                            message=message)
