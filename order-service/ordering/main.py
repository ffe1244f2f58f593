"""order-service FastAPI application.

Responsibilities:
- Keep local replicas of catalog items and accounts fresh by consuming their
  Kafka topics on background threads (one thread per topic).
- Validate, assemble and store orders against those replicas.

The HTTP layer is deliberately thin. Authentication happens upstream; the
gateway passes the caller's identity in `X-User-Email` (or `X-User-Id`).
"""

from __future__ import annotations

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .bootstrap import Services, build_services
from .config import CONSUME_EVENTS
from .models import CallerIdentity, DraftOrder, Order, ReplicatedAccount
from .validation import ValidationOutcome

app = FastAPI(title="Order Service")

# Built on startup, torn down on shutdown. Tests assign it directly.
services: Services | None = None


@app.on_event("startup")
def on_startup() -> None:
    """Startup hook.

    - Build stores, the validation pool and the event lanes.
    - Start one Kafka consumer thread per entity topic.
    """
    global services

    services = build_services()
    if CONSUME_EVENTS:
        services.start_lanes()


@app.on_event("shutdown")
def on_shutdown() -> None:
    """Stop the lanes and release the validation pool and stores."""
    if services is not None:
        services.shutdown()


@app.exception_handler(Exception)
async def handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    print(f"[Orders] Unexpected error: {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


def _services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="service is starting")
    return services


def _caller(email: str | None, user_id: str | None) -> CallerIdentity:
    token = email or user_id
    if not token:
        raise HTTPException(status_code=401, detail="caller identity is required")
    return CallerIdentity.of(token)


def _require_valid(outcome: ValidationOutcome) -> ValidationOutcome:
    if not outcome.is_valid():
        raise HTTPException(status_code=400, detail=outcome.errorMessage)
    return outcome


def _require_account(svc: Services, caller: CallerIdentity) -> ReplicatedAccount:
    account = svc.engine.resolve_account(caller)
    if account is None:
        raise HTTPException(status_code=400, detail=f"Account not found: {caller.describe()}")
    return account


def _require_owned(order: Order | None, order_id: str, account_id: int) -> Order:
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    if order.ownerAccountId != account_id:
        raise HTTPException(status_code=403, detail="order belongs to another account")
    return order


def _dump(order: Order) -> dict:
    return order.model_dump(mode="json")


@app.get("/health")
def health() -> dict[str, str]:
    """Basic liveness endpoint."""
    return {"status": "ok"}


@app.post("/orders", status_code=201)
def create_order(
    draft: DraftOrder,
    x_user_email: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Validate the draft against the replicas, assemble and store the order.

    The owner is always the validated caller, never something from the body.
    """
    svc = _services()
    caller = _caller(x_user_email, x_user_id)

    outcome = _require_valid(svc.engine.validate(draft, caller))
    order = svc.orders.save(svc.assembler.assemble(draft, outcome))
    return _dump(order)


@app.get("/orders/me")
def list_my_orders(
    x_user_email: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    svc = _services()
    account = _require_account(svc, _caller(x_user_email, x_user_id))
    return {
        "accountId": account.id,
        "orders": [_dump(o) for o in svc.orders.list_by_owner(account.id)],
    }


@app.get("/orders/{order_id}")
def get_order(
    order_id: str,
    x_user_email: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    svc = _services()
    account = _require_account(svc, _caller(x_user_email, x_user_id))
    return _dump(_require_owned(svc.orders.get(order_id), order_id, account.id))


@app.put("/orders/{order_id}")
def update_order(
    order_id: str,
    draft: DraftOrder,
    x_user_email: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Replace every line of an order with the newly validated draft."""
    svc = _services()
    caller = _caller(x_user_email, x_user_id)

    existing = svc.orders.get(order_id)
    if existing is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")

    outcome = _require_valid(svc.engine.validate(draft, caller))
    _require_owned(existing, order_id, outcome.account.id)

    updated = svc.coordinator.apply_update(existing, draft, outcome)
    return _dump(svc.orders.save(updated))


@app.delete("/orders/{order_id}")
def delete_order(
    order_id: str,
    x_user_email: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    svc = _services()
    account = _require_account(svc, _caller(x_user_email, x_user_id))
    _require_owned(svc.orders.get(order_id), order_id, account.id)
    svc.orders.delete(order_id)
    return {"status": "deleted", "orderId": order_id}


@app.get("/admin/sync/status")
def sync_status():
    """Replica sizes and lane states. An empty replica usually means the
    lane has not caught up (or the upstream never sent an initial load)."""
    svc = _services()
    items, accounts = svc.items.count(), svc.accounts.count()
    return {
        "status": "SYNCHRONIZED" if items and accounts else "INCOMPLETE",
        "items": items,
        "accounts": accounts,
        "lanes": [lane.snapshot() for lane in svc.lanes],
    }


@app.get("/admin/sync/accounts/{email}")
def account_sync_status(email: str):
    svc = _services()
    account = svc.accounts.find_by("email", email)
    return {
        "email": email,
        "synchronized": account is not None,
        "accountId": account.id if account is not None else None,
    }
