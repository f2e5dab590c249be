"""HTTP views for the orders app.

This module contains DRF API views used by the orders API. Views are kept
intentionally small: they validate requests (via Pydantic), map to domain
commands, delegate to the ``OrderService`` returned by
``providers.get_order_service()``, and translate the outcome into an HTTP
response.

Domain errors carry their own status and code and are rendered as
``{"detail": <code>, "message": <text>}`` (plus ``reason`` for wrapped bad
requests). Unexpected failures of a downstream service answer 503
``UPSTREAM_UNAVAILABLE``.

Idempotency: when an ``Idempotency-Key`` header is provided, order creation
is processed at most once. Retries with the same payload replay the stored
status and body with ``Idempotent-Replay: true``; reusing the key with a
different payload returns 409.
"""

import logging

from django.conf import settings
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import BadRequestError, OrderError
from .idempotency import IdempotencyConflict, claim, finalize
from .schemas import (
    CheckoutSessionDTO,
    CreateOrderDTO,
    OrderPreviewOut,
    OrderReadDTO,
    PreviewOrderDTO,
    StatusUpdateDTO,
)
from .webhooks import SIGNATURE_HEADER

logger = logging.getLogger("orders.api")


def _error_response(exc: OrderError) -> Response:
    body = {"detail": exc.code, "message": exc.message}
    if isinstance(exc, BadRequestError) and exc.reason != exc.code:
        body["reason"] = exc.reason
    return Response(body, status=exc.status_code)


def _validation_error(exc: ValidationError) -> Response:
    return Response({"detail": "VALIDATION_ERROR", "message": str(exc)}, status=status.HTTP_400_BAD_REQUEST)


def _upstream_unavailable() -> Response:
    return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)


def _order_body(order) -> dict:
    return OrderReadDTO.of(order).model_dump(mode="json")


def _positive_int(raw, default: int) -> int:
    value = int(raw) if raw not in (None, "") else default
    if value < 1:
        raise ValueError(raw)
    return value


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List orders (admin) and create an order from the user's cart."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        try:
            page = _positive_int(request.GET.get("page"), 1)
            page_size = min(_positive_int(request.GET.get("page_size"), 20), 100)
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)

        orders, count = providers.get_order_service().list_orders(page, page_size)
        return Response(
            {
                "count": count,
                "page": page,
                "page_size": page_size,
                "results": [_order_body(o) for o in orders],
            },
            status=200,
        )

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with the order when it is created.
            - the stored status and body when the same idempotency key and
              payload are retried (``Idempotent-Replay: true``).
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when the same key is
              reused with a different payload.
            - 400 for DTO validation errors and for any failure while placing
              the order (``reason`` carries the underlying error code).
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when an unexpected
              downstream failure escapes the service.
        """
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        rec = None
        if idem_key:
            try:
                existing, rec = claim(idem_key, request.data)
            except IdempotencyConflict:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            order = providers.get_order_service().create_order(dto.to_command())
        except OrderError as e:
            resp = _error_response(e)
            if rec:
                finalize(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            logger.exception("order creation failed unexpectedly")
            resp = _upstream_unavailable()
            if rec:
                finalize(rec, resp.status_code, resp.data)
            return resp

        body = _order_body(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class OrderPreviewView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_preview"

    def post(self, request):
        try:
            dto = PreviewOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)
        try:
            preview = providers.get_order_service().get_order_preview(
                [i.to_domain() for i in dto.items],
                dto.shipping_address.to_domain(),
                dto.currency,
            )
        except OrderError as e:
            return _error_response(e)
        except Exception:
            logger.exception("order preview failed unexpectedly")
            return _upstream_unavailable()
        return Response(OrderPreviewOut.of(preview).model_dump(mode="json"), status=200)


class UserOrdersView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request, user_id: int):
        orders = providers.get_order_service().list_orders_by_user(user_id)
        return Response({"count": len(orders), "results": [_order_body(o) for o in orders]}, status=200)


class RetrieveOrderView(APIView):
    """Read one order, or hard-delete it (admin)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, order_id: int):
        try:
            order = providers.get_order_service().get_order(order_id)
        except OrderError as e:
            return _error_response(e)
        return Response(_order_body(order), status=200)

    def delete(self, request, order_id: int):
        try:
            providers.get_order_service().delete_order(order_id)
        except OrderError as e:
            return _error_response(e)
        return Response(status=status.HTTP_204_NO_CONTENT)


class OrderStatusView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_update"

    def put(self, request, order_id: int):
        try:
            dto = StatusUpdateDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)
        try:
            order = providers.get_order_service().update_order_status(order_id, dto.new_status, dto.notes)
        except OrderError as e:
            return _error_response(e)
        return Response(_order_body(order), status=200)


class CancelOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_update"

    def post(self, request, order_id: int):
        try:
            order = providers.get_order_service().cancel_order(order_id)
        except OrderError as e:
            return _error_response(e)
        except Exception:
            logger.exception("order cancellation failed unexpectedly", extra={"order_id": order_id})
            return _upstream_unavailable()
        return Response(_order_body(order), status=200)


class PaymentIntentView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request, order_id: int):
        try:
            intent = providers.get_order_service().create_payment_intent(order_id)
        except OrderError as e:
            return _error_response(e)
        except Exception:
            logger.exception("payment intent failed unexpectedly", extra={"order_id": order_id})
            return _upstream_unavailable()
        return Response(
            {"order_id": order_id, "payment_intent_id": intent.id, "client_secret": intent.client_secret},
            status=status.HTTP_201_CREATED,
        )


class CheckoutSessionView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request, order_id: int):
        try:
            dto = CheckoutSessionDTO.model_validate(request.data or {})
        except ValidationError as e:
            return _validation_error(e)
        try:
            session = providers.get_order_service().create_checkout_session(
                order_id,
                dto.success_url or settings.CHECKOUT_SUCCESS_URL,
                dto.cancel_url or settings.CHECKOUT_CANCEL_URL,
            )
        except OrderError as e:
            return _error_response(e)
        except Exception:
            logger.exception("checkout session failed unexpectedly", extra={"order_id": order_id})
            return _upstream_unavailable()
        return Response(
            {"order_id": order_id, "session_id": session.id, "url": session.url},
            status=status.HTTP_201_CREATED,
        )


class PaymentWebhookView(APIView):
    """Receive signed payment events and reconcile the orders they name."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_webhook"

    def post(self, request):
        service = providers.get_order_service()
        try:
            event = service.payments.verify_webhook_signature(request.body, request.headers.get(SIGNATURE_HEADER))
            order = service.handle_payment_event(event)
        except OrderError as e:
            logger.warning("payment webhook rejected", extra={"detail": e.code, "reason": e.message})
            return _error_response(e)
        body = {"received": True, "type": event.type}
        if order is not None:
            body.update({"order_id": order.id, "status": order.status.value})
        return Response(body, status=200)


class ShipmentTrackingView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, tracking_number: str):
        try:
            info = providers.get_order_service().track_shipment(tracking_number)
        except OrderError as e:
            return _error_response(e)
        except Exception:
            logger.exception("shipment tracking failed unexpectedly")
            return _upstream_unavailable()
        return Response(
            {"tracking_number": info.tracking_number, "status": info.status, "events": info.events},
            status=200,
        )
