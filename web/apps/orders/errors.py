"""Error types raised by the orders domain.

Every failure the orchestrator can surface is one of the classes below.
Each carries a stable ``code`` and the HTTP ``status_code`` the API answers
with, so callers branch on the type (or the code) rather than on message
text.
"""


class OrderError(Exception):
    code = "ORDER_ERROR"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFoundError(OrderError):
    """A referenced order, product, variant, cart or shipment does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class BadRequestError(OrderError):
    """The request cannot be honoured as given.

    ``reason`` keeps the code of the error that caused it, if any, so a
    wrapped failure (for example an out-of-stock item during order creation)
    stays inspectable.
    """

    code = "BAD_REQUEST"
    status_code = 400

    def __init__(self, message: str = "", reason: str | None = None):
        super().__init__(message)
        self.reason = reason or self.code


class InvalidTransitionError(BadRequestError):
    code = "INVALID_TRANSITION"

    def __init__(self, current, requested):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(f"Cannot change order status from {current} to {requested}.")
        self.current = current
        self.requested = requested


class OutOfStockError(OrderError):
    code = "OUT_OF_STOCK"
    status_code = 409


class PaymentError(OrderError):
    """The payment provider rejected an operation, or an event is unusable."""

    code = "PAYMENT_FAILED"
    status_code = 500


class UpstreamUnavailableError(OrderError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
