"""Payments service API built with FastAPI.

A small stand-in for a hosted payment provider. It creates payment intents
and checkout sessions for orders, issues refunds, and notifies the orders API
about payment outcomes through signed webhooks (see ``webhooks``). The
``confirm``/``fail``/``complete`` endpoints play the part of the customer
finishing (or abandoning) the payment.

Validation is performed with Pydantic models, while persistence is delegated
to the SQLAlchemy-backed repository in ``repo.PaymentsRepo``.
"""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from . import webhooks
from .repo import IdempotencyKey, PaymentsRepo, canonical_hash, engine, init_db

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)

HOSTED_BASE_URL = os.getenv("PAYMENTS_HOSTED_BASE_URL", "http://localhost:9002")

Currency = constr(pattern=r"^[A-Z]{3}$")


def _wait_for_db(timeout_secs: float = 30.0) -> None:
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


app = FastAPI(title="Payments Service", lifespan=lifespan)


def get_repo() -> PaymentsRepo:
    return PaymentsRepo()


def get_dispatcher():
    return webhooks.dispatch


class PaymentIntentRequest(BaseModel):
    """Request body for creating a payment intent.

    Attributes:
        amount_cents: Positive amount in minor currency units (cents).
        currency: Three-letter ISO currency code (e.g., EUR, USD).
        order_id: Order the payment belongs to, echoed as ``metadata.orderId``.
    """
    amount_cents: int = Field(gt=0)
    currency: Currency
    order_id: int = Field(gt=0)


class CheckoutLineItem(BaseModel):
    name: str = Field(min_length=1)
    unit_amount_cents: int = Field(ge=0)
    quantity: int = Field(gt=0)


class CheckoutSessionRequest(BaseModel):
    order_id: int = Field(gt=0)
    currency: Currency
    line_items: list[CheckoutLineItem] = Field(min_length=1)
    success_url: str
    cancel_url: str


class RefundRequest(BaseModel):
    """Request body for refunding (part of) a payment intent.

    Attributes:
        payment_intent_id: Intent to refund.
        amount_cents: Positive amount in minor units; may not exceed what is
            left of the intent after earlier refunds.
        order_id: Optional order reference kept on the refund.
    """
    payment_intent_id: str
    amount_cents: int = Field(gt=0)
    order_id: Optional[int] = None


@app.get("/health")
def health():
    """Liveness/health check endpoint.

    Returns:
        dict: A small JSON payload indicating service health.
    """
    return {"ok": True}


IdempotencyHeader = Annotated[Optional[str], Header(alias="Idempotency-Key")]


def _claim(s, idempotency_key: str, payload_hash: str) -> Optional[IdempotencyKey]:
    """Claim ``idempotency_key`` for a request with ``payload_hash``.

    Returns:
        IdempotencyKey | None: None when the key is new, otherwise the record
        left by an earlier request with the same payload.

    Raises:
        HTTPException: 409 when the key is reused with a different payload;
            500 when the key record cannot be read back.
    """
    try:
        s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
        s.commit()
        return None
    except IntegrityError:
        s.rollback()
        rec = s.execute(
            select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
        ).scalars().first()
        if not rec:
            raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
        if rec.request_hash != payload_hash:
            raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
        return rec


@app.post("/payment_intents", status_code=201)
def create_payment_intent(
    req: PaymentIntentRequest,
    idempotency_key: IdempotencyHeader = None,
    repo: PaymentsRepo = Depends(get_repo),
):
    """Create a payment intent with optional idempotency.

    When an ``Idempotency-Key`` header is provided, duplicate requests with
    the same payload create at most one intent: retries with the same key and
    identical payload return the intent created by the first request. If the
    key is reused with a different payload, the endpoint responds with 409.

    Args:
        req: Validated body with ``amount_cents``, ``currency``, ``order_id``.
        idempotency_key: Optional key provided via ``Idempotency-Key``.
        repo: Persistence for provider objects.

    Returns:
        dict: The payment intent, including its ``client_secret``.
    """
    metadata = {"orderId": str(req.order_id)}

    if not idempotency_key:
        return repo.create_intent(req.amount_cents, req.currency, metadata).to_dict()

    with repo.session() as s:
        rec = _claim(s, idempotency_key, canonical_hash(req.model_dump()))
        if rec is not None and rec.payment_intent_id:
            existing = repo.get_intent(rec.payment_intent_id)
            if existing is not None:
                return existing.to_dict()

        intent = repo.create_intent(req.amount_cents, req.currency, metadata)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.payment_intent_id = intent.id
        s.commit()
        return intent.to_dict()


@app.get("/payment_intents/{intent_id}")
def get_payment_intent(intent_id: str, repo: PaymentsRepo = Depends(get_repo)):
    intent = repo.get_intent(intent_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="PAYMENT_INTENT_NOT_FOUND")
    return intent.to_dict()


@app.post("/payment_intents/{intent_id}/confirm")
def confirm_payment_intent(
    intent_id: str,
    repo: PaymentsRepo = Depends(get_repo),
    dispatch=Depends(get_dispatcher),
):
    """Mark the intent as paid and emit ``payment_intent.succeeded``."""
    intent = repo.set_intent_status(intent_id, "succeeded")
    if intent is None:
        raise HTTPException(status_code=404, detail="PAYMENT_INTENT_NOT_FOUND")
    delivered = dispatch(webhooks.build_event("payment_intent.succeeded", intent.to_dict()))
    return {**intent.to_dict(), "webhook_delivered": delivered}


@app.post("/payment_intents/{intent_id}/fail")
def fail_payment_intent(
    intent_id: str,
    repo: PaymentsRepo = Depends(get_repo),
    dispatch=Depends(get_dispatcher),
):
    """Mark the intent as failed and emit ``payment_intent.payment_failed``."""
    intent = repo.set_intent_status(intent_id, "failed")
    if intent is None:
        raise HTTPException(status_code=404, detail="PAYMENT_INTENT_NOT_FOUND")
    delivered = dispatch(webhooks.build_event("payment_intent.payment_failed", intent.to_dict()))
    return {**intent.to_dict(), "webhook_delivered": delivered}


@app.post("/checkout/sessions", status_code=201)
def create_checkout_session(req: CheckoutSessionRequest, repo: PaymentsRepo = Depends(get_repo)):
    record = repo.create_checkout_session(
        order_id=req.order_id,
        currency=req.currency,
        line_items=[item.model_dump() for item in req.line_items],
        success_url=req.success_url,
        cancel_url=req.cancel_url,
        hosted_base_url=HOSTED_BASE_URL,
    )
    return record.to_dict()


@app.post("/checkout/sessions/{session_id}/complete")
def complete_checkout_session(
    session_id: str,
    repo: PaymentsRepo = Depends(get_repo),
    dispatch=Depends(get_dispatcher),
):
    """Finish the hosted checkout and emit ``checkout.session.completed``."""
    record = repo.complete_checkout_session(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="CHECKOUT_SESSION_NOT_FOUND")
    delivered = dispatch(webhooks.build_event("checkout.session.completed", record.to_dict()))
    return {**record.to_dict(), "webhook_delivered": delivered}


@app.post("/refunds", status_code=201)
def create_refund(
    req: RefundRequest,
    idempotency_key: IdempotencyHeader = None,
    repo: PaymentsRepo = Depends(get_repo),
):
    """Refund part or all of a payment intent.

    With an ``Idempotency-Key`` a repeated request gets the refund issued by
    the first one, instead of being checked again against what is left.

    Raises:
        HTTPException: 402 when the intent is unknown or the amount exceeds
            what is left to refund; 409 when the key is reused with a
            different payload.
    """
    if not idempotency_key:
        return _issue_refund(req, repo).to_dict()

    with repo.session() as s:
        rec = _claim(s, idempotency_key, canonical_hash({"refund": req.model_dump()}))
        if rec is not None and rec.refund_id:
            existing = repo.get_refund(rec.refund_id)
            if existing is not None:
                logger.info("refund replayed", extra={"refund_id": existing.id, "idempotency_key": idempotency_key})
                return existing.to_dict()

        refund = _issue_refund(req, repo)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.refund_id = refund.id
        s.commit()
        return refund.to_dict()


def _issue_refund(req: RefundRequest, repo: PaymentsRepo):
    intent = repo.get_intent(req.payment_intent_id)
    if intent is None:
        raise HTTPException(status_code=402, detail="REFUND_DECLINED")
    remaining = intent.amount_cents - repo.refunded_total(intent.id)
    if req.amount_cents > remaining:
        raise HTTPException(status_code=402, detail="REFUND_DECLINED")
    refund = repo.create_refund(intent.id, req.amount_cents, req.order_id)
    logger.info("refund created", extra={"refund_id": refund.id, "payment_intent_id": intent.id})
    return refund


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
        "services.payments.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "9002")),
        workers=int(os.getenv("UVICORN_WORKERS", "2")),
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
