"""Inventory service API built with FastAPI.

This module exposes the inventory ledger over HTTP: creating the record of a
new product variant, reading stock levels, and the reserve / release /
commit / adjust mutations used by the orders API. Validation is performed
with Pydantic models, while the optimistic-concurrency logic lives in
``ledger.InventoryLedger`` on top of the SQLAlchemy repository in ``repo``.

Ledger errors carry their own HTTP status (404 missing record, 409 out of
stock or duplicate record, 422 invalid quantity) and are rendered as
``{"detail": <code>, "message": <text>}``.
"""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .ledger import InventoryError, InventoryLedger, Operator
from .repo import InventoryRecord, InventoryRepo, engine, init_db

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


def _wait_for_db(timeout_secs: float = 30.0) -> None:
    # the database container may still be starting
    deadline = time.time() + timeout_secs
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _wait_for_db()
    init_db()
    yield


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def get_ledger() -> InventoryLedger:
    return InventoryLedger(InventoryRepo())


class CreateInventoryRequest(BaseModel):
    """Request body for creating the record of a new variant.

    Attributes:
        variant_id: Product variant identifier.
        initial_quantity: Units on hand at creation.
        reorder_threshold: On-hand level under which a reorder is flagged.
    """
    variant_id: int = Field(gt=0)
    initial_quantity: int = Field(ge=0)
    reorder_threshold: int = Field(default=0, ge=0)


class QuantityRequest(BaseModel):
    """Request body for reserve, release and commit.

    Attributes:
        quantity: Positive number of units.
        reservation_key: For release and commit, the idempotency key the
            settled reservation was sent with.
    """
    quantity: int = Field(gt=0)
    reservation_key: Optional[str] = Field(default=None, max_length=200)


class AdjustRequest(BaseModel):
    """Request body for direct on-hand adjustments.

    Attributes:
        quantity: Non-negative number of units.
        operator: ADD, SUBTRACT or SET.
        requires: Key of an earlier write; the adjustment only applies once
            that write has landed.
    """
    quantity: int = Field(ge=0)
    operator: Operator = Operator.SET
    requires: Optional[str] = Field(default=None, max_length=200)


class InventoryResponse(BaseModel):
    variant_id: int
    quantity_on_hand: int
    reserved_quantity: int
    reorder_threshold: int
    is_reorder_needed: bool
    version: int

    @classmethod
    def of(cls, record: InventoryRecord) -> "InventoryResponse":
        return cls(**record.snapshot())


class AvailabilityResponse(BaseModel):
    variant_id: int
    quantity: int
    in_stock: bool


IdempotencyKey = Annotated[Optional[str], Header(alias="Idempotency-Key", max_length=200)]


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.code, "message": str(exc)})


@app.get("/health")
def health():
    """Liveness/health check endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


@app.post("/inventory", response_model=InventoryResponse, status_code=201)
def create_inventory(req: CreateInventoryRequest, ledger: InventoryLedger = Depends(get_ledger)):
    """Create the inventory record of a newly created product variant."""
    record = ledger.create_inventory_for_variant(req.variant_id, req.initial_quantity, req.reorder_threshold)
    return InventoryResponse.of(record)


@app.get("/inventory/{variant_id}", response_model=InventoryResponse)
def get_inventory(variant_id: int, ledger: InventoryLedger = Depends(get_ledger)):
    return InventoryResponse.of(ledger.get(variant_id))


@app.get("/inventory/{variant_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    variant_id: int,
    quantity: int = Query(gt=0),
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Check whether ``quantity`` units are on hand. Never mutates stock."""
    return AvailabilityResponse(
        variant_id=variant_id,
        quantity=quantity,
        in_stock=ledger.is_in_stock(variant_id, quantity),
    )


@app.post("/inventory/{variant_id}/reserve", response_model=InventoryResponse)
def reserve(
    variant_id: int,
    req: QuantityRequest,
    idempotency_key: IdempotencyKey = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Reserve stock for an order being placed.

    Writes sent with an ``Idempotency-Key`` are applied at most once; a
    resent request gets the current record back.

    Raises:
        OutOfStock: Rendered as 409 when stock is insufficient or the
            concurrent-update retries are exhausted.
    """
    return InventoryResponse.of(ledger.reserve_stock(variant_id, req.quantity, key=idempotency_key))


@app.post("/inventory/{variant_id}/release")
def release(
    variant_id: int,
    req: QuantityRequest,
    idempotency_key: IdempotencyKey = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Release a reservation. Returns ``{"released": false}`` when nothing was released."""
    record = ledger.release_stock(
        variant_id, req.quantity, key=idempotency_key, reservation_key=req.reservation_key
    )
    if record is None:
        return {"released": False, "variant_id": variant_id}
    return {"released": True, **record.snapshot()}


@app.post("/inventory/{variant_id}/commit", response_model=InventoryResponse)
def commit(
    variant_id: int,
    req: QuantityRequest,
    idempotency_key: IdempotencyKey = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Convert a reservation into a finalized deduction."""
    record = ledger.commit_reservation(
        variant_id, req.quantity, key=idempotency_key, reservation_key=req.reservation_key
    )
    return InventoryResponse.of(record)


@app.post("/inventory/{variant_id}/adjust", response_model=InventoryResponse)
def adjust(
    variant_id: int,
    req: AdjustRequest,
    idempotency_key: IdempotencyKey = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    record = ledger.update_quantity(
        variant_id, req.quantity, req.operator, key=idempotency_key, requires=req.requires
    )
    return InventoryResponse.of(record)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.inventory.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "9001")),
        workers=int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1))))),
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
