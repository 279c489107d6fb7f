from __future__ import annotations
import sys

import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware

import redis.asyncio as redis

from .assignment import AssignmentEngine
from .autoassign import AutoAssignmentCoordinator
from .errors import KeyshopError
from .helpers import ct_equal
from .infra import timings
from .infra.sql import open_database
from .ledger import OrderLedger
from .maintenance import InventoryMaintenance
from .model import config as config_backend
from .model.db import key_view, order_view

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./keyshop.db")
    sys.exit(1)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
SNAPSHOT_DIR = os.environ.get("SNAPSHOT_DIR", "./snapshots")
TIMINGS_DUMP = os.environ.get("TIMINGS_DUMP", "")

# error kind -> HTTP status
STATUS_BY_KIND = {
    "validation": 400,
    "wrong_order": 400,
    "order_not_paid": 400,
    "order_not_found": 404,
    "key_not_found": 404,
    "no_available_key": 409,
    "duplicate_key": 409,
    "invalid_transition": 409,
    "retryable": 503,
}


db = open_database(DATABASE_URL)


# ---
# startup / shutdown
# ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await db.create_schema()

    if config_backend.BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        configs = config_backend.new_store(r=app.state.redis)
    else:
        app.state.redis = None
        configs = config_backend.new_store(sessions=db.sessions,
                                           gated=db.gated)

    ledger = OrderLedger(db.sessions, db.gated)
    assigner = AssignmentEngine(db.sessions, db.gated)
    coordinator = AutoAssignmentCoordinator(assigner, ledger, configs)
    await coordinator.load()
    ledger.subscribe(coordinator.handle_event)

    app.state.ledger = ledger
    app.state.assigner = assigner
    app.state.coordinator = coordinator
    app.state.maintenance = InventoryMaintenance(db.sessions, db.gated,
                                                 SNAPSHOT_DIR)

    logger.info("keyshop is starting up (config backend: %s)",
                config_backend.BACKEND)
    try:
        yield
    finally:
        r = app.state.redis
        if r is not None:
            await r.close()
            app.state.redis = None
        if TIMINGS_DUMP:
            timings.dump_aggregates(TIMINGS_DUMP)
        await db.dispose()


app = FastAPI(
    title="keyshop",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(KeyshopError)
async def _keyshop_error(request: Request, exc: KeyshopError):
    return ORJSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 400),
        content={"error": exc.message, "kind": exc.kind,
                 "retryable": exc.retryable},
    )


# ----------------------------
# Dependencies
# ----------------------------
def get_ledger(request: Request) -> OrderLedger:
    return request.app.state.ledger


def get_assigner(request: Request) -> AssignmentEngine:
    return request.app.state.assigner


def get_coordinator(request: Request) -> AutoAssignmentCoordinator:
    return request.app.state.coordinator


def get_maintenance(request: Request) -> InventoryMaintenance:
    return request.app.state.maintenance


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def admin_actor(request: Request) -> Optional[int]:
    # sessions carry the admin name only; numeric ids come from the
    # auth layer when there is one
    actor = request.session.get("admin_id")
    return int(actor) if actor is not None else None


# ----------------------------
# Payloads
# ----------------------------
class OrderCreate(BaseModel):
    user_id: int
    product_id: int


class PaymentSubmit(BaseModel):
    method: str
    trx_id: str
    sender: Optional[str] = None


class KeysPayload(BaseModel):
    keys: List[str] = Field(default_factory=list)


class StatusPayload(BaseModel):
    status: str


class TogglePayload(BaseModel):
    enabled: bool


class ConfigPayload(BaseModel):
    value: bool | int | float | str


class BulkPayload(BaseModel):
    order_ids: List[int] = Field(default_factory=list)


async def _order_payload(ledger: OrderLedger, order_id: int) -> dict:
    order, keys = await ledger.get_with_keys(order_id)
    return order_view(order, keys)


# ----------------------------
# Admin login
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    raise HTTPException(status_code=401, detail="Invalid credentials.")


@app.post("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


# ----------------------------
# Buyer API
# ----------------------------
@app.post("/api/orders")
async def create_order(payload: OrderCreate,
                       ledger: OrderLedger = Depends(get_ledger),
                       assigner: AssignmentEngine = Depends(get_assigner)):
    inv = await assigner.inventory(payload.product_id)
    if not inv["in_stock"]:
        raise HTTPException(400, detail="Out of stock")
    order = await ledger.create(payload.user_id, payload.product_id)
    return order_view(order)


@app.get("/api/orders/{order_id}")
async def get_order(order_id: int,
                    ledger: OrderLedger = Depends(get_ledger)):
    return await _order_payload(ledger, order_id)


@app.post("/api/orders/{order_id}/payment")
async def submit_payment(order_id: int, payload: PaymentSubmit,
                         ledger: OrderLedger = Depends(get_ledger)):
    await ledger.submit_payment(order_id, payload.method, payload.trx_id,
                                payload.sender)
    return {
        "message": "Payment submitted, waiting for confirmation",
        "order": await _order_payload(ledger, order_id),
    }


@app.get("/api/products/{product_id}/stock")
async def product_stock(product_id: int,
                        assigner: AssignmentEngine = Depends(get_assigner)):
    inv = await assigner.inventory(product_id)
    return {"product_id": product_id, "in_stock": inv["in_stock"]}


# ----------------------------
# Admin: orders
# ----------------------------
@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(limit: int = 200, status: Optional[str] = None,
                           ledger: OrderLedger = Depends(get_ledger)):
    rows = await ledger.list_with_keys(status=status, limit=limit)
    return {"items": [order_view(o, keys) for o, keys in rows],
            "limit": limit}


@app.post("/api/admin/orders/{order_id}/confirm-payment",
          dependencies=[Depends(require_admin)])
async def confirm_payment(order_id: int,
                          ledger: OrderLedger = Depends(get_ledger)):
    await ledger.confirm_payment(order_id)
    return {
        "message": "Payment confirmed. Keys/details will be assigned soon.",
        "order": await _order_payload(ledger, order_id),
    }


@app.post("/api/admin/orders/{order_id}/mark-paid",
          dependencies=[Depends(require_admin)])
async def mark_paid(order_id: int, payload: KeysPayload,
                    ledger: OrderLedger = Depends(get_ledger)):
    assigned = []
    if payload.keys:
        _, assigned = await ledger.confirm_payment_with_keys(
            order_id, payload.keys
        )
    else:
        await ledger.confirm_payment(order_id)
    return {
        "message": "Payment confirmed and keys assigned successfully!",
        "order": await _order_payload(ledger, order_id),
        "assigned_keys": [key_view(k) for k in assigned],
    }


@app.post("/api/admin/orders/{order_id}/assign-keys",
          dependencies=[Depends(require_admin)])
async def assign_keys(order_id: int, payload: KeysPayload,
                      ledger: OrderLedger = Depends(get_ledger),
                      assigner: AssignmentEngine = Depends(get_assigner)):
    assigned = await assigner.assign_manual(order_id, payload.keys)
    return {
        "message": "Keys assigned successfully",
        "order": await _order_payload(ledger, order_id),
        "assigned_keys": [key_view(k) for k in assigned],
    }


@app.post("/api/admin/orders/{order_id}/assign",
          dependencies=[Depends(require_admin)])
async def assign_from_stock(order_id: int,
                            ledger: OrderLedger = Depends(get_ledger),
                            assigner: AssignmentEngine = Depends(get_assigner)):
    order, _ = await ledger.get_with_keys(order_id)
    result = await assigner.assign(order.product_id, order_id)
    if result.error is not None:
        raise result.error
    return {
        "message": "Key assigned",
        "order": await _order_payload(ledger, order_id),
        "assigned_key": key_view(result.key),
    }


@app.post("/api/admin/orders/{order_id}/status",
          dependencies=[Depends(require_admin)])
async def update_status(order_id: int, payload: StatusPayload,
                        ledger: OrderLedger = Depends(get_ledger)):
    await ledger.set_status(order_id, payload.status)
    return {
        "message": "Order status updated successfully",
        "order": await _order_payload(ledger, order_id),
    }


@app.post("/api/admin/orders/{order_id}/keys/{key_id}/release",
          dependencies=[Depends(require_admin)])
async def release_key(order_id: int, key_id: int,
                      ledger: OrderLedger = Depends(get_ledger),
                      assigner: AssignmentEngine = Depends(get_assigner)):
    key = await assigner.release(order_id, key_id)
    return {
        "message": "Key released and is now available for reassignment",
        "key": key_view(key),
        "order": await _order_payload(ledger, order_id),
    }


# ----------------------------
# Admin: keys + inventory
# ----------------------------
@app.post("/api/admin/products/{product_id}/keys",
          dependencies=[Depends(require_admin)])
async def stock_keys(product_id: int, payload: KeysPayload,
                     assigner: AssignmentEngine = Depends(get_assigner)):
    created = await assigner.stock(product_id, payload.keys)
    return {"message": "Keys added", "keys": [key_view(k) for k in created]}


@app.get("/api/admin/products/{product_id}/keys",
         dependencies=[Depends(require_admin)])
async def product_keys(product_id: int,
                       assigner: AssignmentEngine = Depends(get_assigner)):
    keys = await assigner.list_keys(product_id)
    return {"items": [key_view(k) for k in keys],
            "inventory": await assigner.inventory(product_id)}


@app.get("/api/admin/keys", dependencies=[Depends(require_admin)])
async def list_keys(limit: int = 500,
                    assigner: AssignmentEngine = Depends(get_assigner)):
    keys = await assigner.list_keys(limit=limit)
    return {"items": [key_view(k) for k in keys], "limit": limit}


@app.put("/api/admin/keys/{key_id}/revoke",
         dependencies=[Depends(require_admin)])
async def revoke_key(key_id: int,
                     assigner: AssignmentEngine = Depends(get_assigner)):
    key = await assigner.revoke(key_id)
    return {"message": "Key revoked", "key": key_view(key)}


# ----------------------------
# Admin: auto-assignment
# ----------------------------
@app.get("/api/admin/auto-assignment/status",
         dependencies=[Depends(require_admin)])
async def auto_status(
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    return {"enabled": coordinator.enabled,
            "statistics": await coordinator.statistics()}


@app.post("/api/admin/auto-assignment/toggle",
          dependencies=[Depends(require_admin)])
async def auto_toggle(
    payload: TogglePayload, request: Request,
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    enabled = await coordinator.toggle(payload.enabled, admin_actor(request))
    return {"message": f"Auto-assignment {'enabled' if enabled else 'disabled'}",
            "enabled": enabled}


@app.get("/api/admin/auto-assignment/config",
         dependencies=[Depends(require_admin)])
async def auto_config(
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    return await coordinator.get_config()


@app.post("/api/admin/auto-assignment/config/{key}",
          dependencies=[Depends(require_admin)])
async def auto_config_set(
    key: str, payload: ConfigPayload, request: Request,
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    value = await coordinator.update_config(key, payload.value,
                                            admin_actor(request))
    return {"message": f"Configuration {key} updated successfully",
            "key": key, "value": value}


@app.post("/api/admin/auto-assignment/process/{order_id}",
          dependencies=[Depends(require_admin)])
async def auto_process(
    order_id: int,
    ledger: OrderLedger = Depends(get_ledger),
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    result = await coordinator.process_order(order_id)
    out = result.as_dict()
    if result.ok:
        out["order"] = await _order_payload(ledger, order_id)
    return out


@app.post("/api/admin/auto-assignment/bulk",
          dependencies=[Depends(require_admin)])
async def auto_bulk(
    payload: BulkPayload,
    ledger: OrderLedger = Depends(get_ledger),
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    orders = []
    for oid in payload.order_ids:
        order = await ledger.find_by_id(oid)
        if order is not None:
            orders.append(order)
    results = await coordinator.bulk_assign(orders)
    found = {o.id for o in orders}
    missing = [{"order_id": oid, "success": False, "status": "failed",
                "error": "order_not_found", "message": "Order not found"}
               for oid in payload.order_ids if oid not in found]
    return {"results": [r.as_dict() for r in results] + missing}


@app.get("/api/admin/auto-assignment/statistics",
         dependencies=[Depends(require_admin)])
async def auto_statistics(
    coordinator: AutoAssignmentCoordinator = Depends(get_coordinator),
):
    return await coordinator.statistics()


# ----------------------------
# Admin: maintenance
# ----------------------------
@app.get("/api/admin/maintenance/orphans",
         dependencies=[Depends(require_admin)])
async def orphans(maint: InventoryMaintenance = Depends(get_maintenance)):
    return {"items": [key_view(k) for k in await maint.find_orphans()]}


@app.post("/api/admin/maintenance/repair-orphans",
          dependencies=[Depends(require_admin)])
async def repair_orphans(
    maint: InventoryMaintenance = Depends(get_maintenance),
):
    return (await maint.repair_orphans()).as_dict()


@app.post("/api/admin/maintenance/dedupe-keys",
          dependencies=[Depends(require_admin)])
async def dedupe_keys(maint: InventoryMaintenance = Depends(get_maintenance)):
    return (await maint.dedupe_keys()).as_dict()
