"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the domain ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (inventory, shipping, payments) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Retry policy with exponential backoff for transport errors and 5xx.
- Business outcomes (not found, out of stock, declined refund) are answers,
    not failures: they are mapped to domain errors and never trip a breaker.
- Payments idempotency: intent creation always sends an ``Idempotency-Key``
    so a retried request cannot create a second intent.
"""

import threading
import time
from datetime import date
from decimal import Decimal
from typing import List, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import (
    CheckoutLine,
    CheckoutSession,
    InventoryPort,
    PaymentEvent,
    PaymentIntent,
    PaymentsPort,
    Refund,
    Shipment,
    ShippingPort,
    ShippingRate,
    ShippingRateRequest,
    StockOperator,
    TrackingInfo,
    to_cents,
    to_money,
)
from .errors import BadRequestError, NotFoundError, OutOfStockError, PaymentError, UpstreamUnavailableError
from .webhooks import construct_event

# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful trial call; stays HALF_OPEN while a
      single trial call is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_trial_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            UpstreamUnavailableError: If the circuit is OPEN or a HALF_OPEN
                trial call is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise UpstreamUnavailableError(f"{self.name} circuit is open.")
            if st == "HALF_OPEN":
                if self._half_open_trial_in_flight:
                    raise UpstreamUnavailableError(f"{self.name} circuit is probing.")
                self._half_open_trial_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_trial_in_flight = False

    def on_failure(self):
        """Record a failed call; open the breaker at the threshold or on a failed trial call."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_trial_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN trial flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_trial_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
_inventory_cb = _breaker("inventory")
_shipping_cb = _breaker("shipping")
_payments_cb = _breaker("payments")

BREAKERS = {cb.name: cb for cb in (_inventory_cb, _shipping_cb, _payments_cb)}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds, max_sleep_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retries are attempted only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    timeout: float,
    json: Optional[dict] = None,
    params: Optional[dict] = None,
    extra_headers: Optional[dict] = None,
    business_statuses: tuple = (),
) -> httpx.Response:
    """Perform a protected call and return the response.

    2xx responses and ``business_statuses`` are returned to the caller and
    count as healthy. Transport errors and 5xx are retried up to
    ``HTTP_RETRY_MAX`` times; when retries run out the breaker records a
    failure.

    Raises:
        UpstreamUnavailableError: Circuit open, or retries exhausted.
        httpx.HTTPStatusError: Any other non-2xx response.
    """
    max_retries, backoff, cap = _retry_policy()
    tries = 0

    state = breaker.before_call()
    headers = _request_headers({**(extra_headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, params=params, headers=headers)
                    if resp.status_code < 300 or resp.status_code in business_statuses:
                        breaker.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        breaker.on_success()  # the service answered
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    breaker.on_failure()
                    detail = str(exc) if exc else f"HTTP {resp.status_code}"
                    raise UpstreamUnavailableError(f"{breaker.name} unavailable: {detail}") from exc

                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
    finally:
        breaker.on_finish()


def _error_payload(resp: httpx.Response) -> tuple[str, str]:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    detail = str(body.get("detail") or "")
    message = str(body.get("message") or detail or f"HTTP {resp.status_code}")
    return detail, message


def _with_optional(payload: dict, **optional) -> dict:
    return {**payload, **{k: v for k, v in optional.items() if v is not None}}


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """HTTP client for the inventory service with retry and circuit breaker."""

    BUSINESS = (404, 409, 422)

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        key: Optional[str] = None,
    ) -> httpx.Response:
        resp = _send(
            _inventory_cb, method, f"{self.base_url}{path}", self.timeout,
            json=json, params=params, business_statuses=self.BUSINESS,
            extra_headers={"Idempotency-Key": key} if key else None,
        )
        if resp.status_code < 300:
            return resp
        detail, message = _error_payload(resp)
        if resp.status_code == 404:
            raise NotFoundError(message)
        if resp.status_code == 409 and detail == "OUT_OF_STOCK":
            raise OutOfStockError(message)
        raise BadRequestError(message, reason=detail or None)

    def is_in_stock(self, variant_id: int, quantity: int) -> bool:
        resp = self._call("GET", f"/inventory/{variant_id}/availability", params={"quantity": quantity})
        return bool(resp.json().get("in_stock", False))

    def reserve_stock(self, variant_id: int, quantity: int, key: Optional[str] = None) -> None:
        """Reserve stock for one variant.

        ``key`` travels as ``Idempotency-Key``, so a retry after a lost
        response does not hold the units twice.

        Maps business responses:
        - 200 → reserved
        - 409 → ``OutOfStockError`` (insufficient stock or contention)
        - 404 → ``NotFoundError``

        Raises:
            UpstreamUnavailableError: Circuit open or retries exhausted.
        """
        self._call("POST", f"/inventory/{variant_id}/reserve", json={"quantity": quantity}, key=key)

    def release_stock(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None:
        payload = _with_optional({"quantity": quantity}, reservation_key=reservation_key)
        self._call("POST", f"/inventory/{variant_id}/release", json=payload, key=key)

    def commit_reservation(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None:
        payload = _with_optional({"quantity": quantity}, reservation_key=reservation_key)
        self._call("POST", f"/inventory/{variant_id}/commit", json=payload, key=key)

    def update_quantity(
        self,
        variant_id: int,
        quantity: int,
        operator: StockOperator = StockOperator.SET,
        key: Optional[str] = None,
        requires: Optional[str] = None,
    ) -> None:
        payload = _with_optional({"quantity": quantity, "operator": StockOperator(operator).value}, requires=requires)
        self._call("POST", f"/inventory/{variant_id}/adjust", json=payload, key=key)

    def create_inventory_for_variant(self, variant_id: int, initial_quantity: int) -> None:
        self._call("POST", "/inventory", json={"variant_id": variant_id, "initial_quantity": initial_quantity})

    def get_quantity_on_hand(self, variant_id: int) -> int:
        return self._snapshot(variant_id).get("quantity_on_hand", 0)

    def get_reserved_quantity(self, variant_id: int) -> int:
        return self._snapshot(variant_id).get("reserved_quantity", 0)

    def _snapshot(self, variant_id: int) -> dict:
        try:
            return self._call("GET", f"/inventory/{variant_id}").json()
        except NotFoundError:
            return {}


# ---------------- Shipping Adapter ---------------- #

def _rate_request_payload(req: ShippingRateRequest) -> dict:
    return {
        "origin": req.origin.as_dict(),
        "destination": req.destination.as_dict(),
        "weight": str(req.weight),
        "width": str(req.width),
        "height": str(req.height),
        "length": str(req.length),
        "quantity": req.quantity,
    }


class HttpShippingClient(ShippingPort):
    """HTTP client for the shipping gateway (multi-carrier rating and labels)."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.SHIPPING_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        resp = _send(_shipping_cb, method, f"{self.base_url}{path}", self.timeout, json=json, business_statuses=(404,))
        if resp.status_code == 404:
            raise NotFoundError(_error_payload(resp)[1])
        return resp

    def get_rates(self, requests: List[ShippingRateRequest]) -> List[ShippingRate]:
        data = self._call("POST", "/rates", json={"requests": [_rate_request_payload(r) for r in requests]}).json()
        return [
            ShippingRate(
                carrier=r["carrier"],
                service=r["service"],
                total_rate=to_money(r["total_rate"]),
                base_rate=to_money(r.get("base_rate", "0")),
                tax=to_money(r.get("tax", "0")),
                currency=r.get("currency", "USD"),
                estimated_delivery=date.fromisoformat(r["estimated_delivery"]),
            )
            for r in data.get("rates", [])
        ]

    def create_shipment(self, requests: List[ShippingRateRequest]) -> Shipment:
        data = self._call("POST", "/shipments", json={"requests": [_rate_request_payload(r) for r in requests]}).json()
        return Shipment(tracking_number=data["tracking_number"], label_urls=list(data.get("label_urls", [])))

    def track(self, tracking_number: str) -> TrackingInfo:
        data = self._call("GET", f"/shipments/{tracking_number}/tracking").json()
        return TrackingInfo(
            tracking_number=tracking_number,
            status=data.get("status", "UNKNOWN"),
            events=list(data.get("events", [])),
        )

    def cancel(self, tracking_number: str) -> None:
        self._call("POST", f"/shipments/{tracking_number}/cancel")


# ---------------- Payments Adapter ---------------- #

class HttpPaymentsClient(PaymentsPort):
    """HTTP client for the payments service with retry and circuit breaker.

    Notes:
        ``idempotency_key`` may be set by the caller to pin the key sent on
        intent creation; otherwise a key derived from the order id is used,
        so repeated requests for the same order reuse one intent.
    """

    BUSINESS = (402, 404, 409)

    def __init__(self, base_url: str | None = None, timeout: float | None = None, idempotency_key: str | None = None):
        self.base_url = (base_url or settings.PAYMENTS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.idempotency_key = idempotency_key

    def create_payment_intent(self, amount: Decimal, currency: str, order_id: int) -> PaymentIntent:
        """Create a payment intent for an order.

        Returns:
            PaymentIntent: Intent id and client secret.

        Raises:
            PaymentError: The provider refused the request (402/409).
        """
        key = self.idempotency_key or f"order-{order_id}-payment-intent"
        payload = {"amount_cents": to_cents(amount), "currency": currency, "order_id": order_id}
        resp = _send(
            _payments_cb, "POST", f"{self.base_url}/payment_intents", self.timeout,
            json=payload, extra_headers={"Idempotency-Key": key}, business_statuses=self.BUSINESS,
        )
        if resp.status_code >= 300:
            raise PaymentError(f"Payment intent was refused: {_error_payload(resp)[1]}")
        data = resp.json()
        return PaymentIntent(
            id=data["id"],
            client_secret=data["client_secret"],
            amount=Decimal(data["amount"]) / 100,
            currency=str(data.get("currency", currency)).upper(),
            status=data.get("status", "requires_payment_method"),
        )

    def create_checkout_session(
        self,
        items: List[CheckoutLine],
        currency: str,
        order_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        payload = {
            "order_id": order_id,
            "currency": currency,
            "line_items": [
                {"name": i.name, "unit_amount_cents": to_cents(i.unit_amount), "quantity": i.quantity}
                for i in items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        resp = _send(
            _payments_cb, "POST", f"{self.base_url}/checkout/sessions", self.timeout,
            json=payload, business_statuses=self.BUSINESS,
        )
        if resp.status_code >= 300:
            raise PaymentError(f"Checkout session was refused: {_error_payload(resp)[1]}")
        data = resp.json()
        return CheckoutSession(id=data["id"], url=data["url"], payment_intent_id=data.get("payment_intent"))

    def create_refund(self, payment_intent_id: str, amount: Decimal, order_id: int) -> Optional[Refund]:
        """Refund an intent; 402 (declined) maps to None.

        The idempotency key is derived from the order, so a retry after a lost
        response gets the refund already issued instead of a second one.
        """
        payload = {"payment_intent_id": payment_intent_id, "amount_cents": to_cents(amount), "order_id": order_id}
        resp = _send(
            _payments_cb, "POST", f"{self.base_url}/refunds", self.timeout,
            json=payload, extra_headers={"Idempotency-Key": f"order-{order_id}-refund"},
            business_statuses=self.BUSINESS,
        )
        if resp.status_code >= 300:
            return None
        data = resp.json()
        return Refund(
            id=data["id"],
            payment_intent_id=data.get("payment_intent", payment_intent_id),
            amount=Decimal(data["amount"]) / 100,
            status=data.get("status", "succeeded"),
        )

    def verify_webhook_signature(self, payload: bytes, signature_header: str) -> PaymentEvent:
        return construct_event(
            payload,
            signature_header,
            settings.PAYMENTS_WEBHOOK_SECRET,
            getattr(settings, "PAYMENTS_WEBHOOK_TOLERANCE_SECS", 300),
        )
