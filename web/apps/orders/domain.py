"""Domain models and ports for the order lifecycle.

This module contains the plain dataclasses the orchestrator works with, the
order status machine, and the protocol definitions (ports) for the
collaborators the orchestrator depends on: inventory ledger, shipping
gateway, payment gateway, notifications, catalog, cart and order storage.
The orchestrating service itself lives in ``service``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from .errors import BadRequestError, InvalidTransitionError


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    ``DELIVERED`` and ``CANCELLED`` are terminal.
    """

    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def ensure_transition(current: OrderStatus, new: OrderStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> new`` is allowed."""
    if not can_transition(current, new):
        raise InvalidTransitionError(current, new)


class StockOperator(str, Enum):
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"
    SET = "SET"


class HostedAt(str, Enum):
    """Where a product ships from: the seller's store or our warehouse."""

    STORE = "STORE"
    WAREHOUSE = "WAREHOUSE"


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Convert a money amount to integer minor units (cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Address:
    """Postal address used for shipping, billing and rate requests."""

    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    def as_dict(self) -> dict:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
        }


@dataclass(frozen=True)
class LineItem:
    """A single requested line of an order.

    Attributes:
        product_id: Catalog product identifier.
        variant_id: Product variant identifier (the unit of stock).
        quantity: Number of units requested, positive.
        price_at_purchase: Unit price quoted to the customer.
    """

    product_id: int
    variant_id: int
    quantity: int
    price_at_purchase: Decimal


@dataclass(frozen=True)
class Product:
    """Catalog view of a product as the orchestrator needs it."""

    id: int
    name: str
    price: Decimal
    weight: Decimal
    width: Decimal
    height: Decimal
    length: Decimal
    hosted_at: HostedAt = HostedAt.WAREHOUSE
    seller_postal_code: str = ""
    variant_ids: frozenset = frozenset()

    def has_variant(self, variant_id: int) -> bool:
        return variant_id in self.variant_ids


@dataclass(frozen=True)
class ShippingRateRequest:
    origin: Address
    destination: Address
    weight: Decimal
    width: Decimal
    height: Decimal
    length: Decimal
    quantity: int = 1


@dataclass(frozen=True)
class ShippingRate:
    """A priced shipping option offered by a carrier.

    Attributes:
        carrier: Carrier name, e.g. ``DHL``.
        service: Carrier service level, e.g. ``Ground``.
        total_rate: Amount charged to the customer for shipping.
        base_rate: Carrier base rate, before tax.
        tax: Tax portion of the rate.
        currency: ISO currency code of the amounts.
        estimated_delivery: Expected delivery date.
    """

    carrier: str
    service: str
    total_rate: Decimal
    base_rate: Decimal
    tax: Decimal
    currency: str
    estimated_delivery: date


@dataclass(frozen=True)
class Shipment:
    tracking_number: str
    label_urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TrackingInfo:
    tracking_number: str
    status: str
    events: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Cart:
    id: int
    user_id: int
    total_price: Decimal


@dataclass
class OrderItem:
    product_id: int
    variant_id: int
    quantity: int
    price_at_purchase: Decimal
    id: Optional[int] = None


@dataclass(frozen=True)
class HistoryEntry:
    previous_status: OrderStatus
    new_status: OrderStatus
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier for the order, or None if not yet saved.
        user_id: Owner of the order.
        status: Current OrderStatus.
        shipping_address: Where the order ships to.
        billing_address: Where the order is billed to.
        currency: ISO currency code (e.g. 'USD').
        total_amount: Cart total plus the selected shipping rate, computed
            once at creation.
        items: OrderItem lines; at least one.
        history: Accepted status transitions, oldest first.
        payment_intent_id: Provider payment intent collecting the order.
        checkout_session_id: Provider checkout session, when one was opened.
        email: Contact address for notifications, optional.
    """

    id: Optional[int]
    user_id: int
    status: OrderStatus
    shipping_address: Address
    billing_address: Address
    currency: str
    total_amount: Decimal
    items: List[OrderItem] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)
    order_date: Optional[datetime] = None
    applied_coupon_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class OrderPreview:
    items: List[LineItem]
    currency: str
    total_amount: Decimal
    available_shipping_rates: List[ShippingRate]


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str
    amount: Decimal
    currency: str
    status: str = "requires_payment_method"


@dataclass(frozen=True)
class CheckoutLine:
    name: str
    unit_amount: Decimal
    quantity: int


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class Refund:
    id: str
    payment_intent_id: str
    amount: Decimal
    status: str


@dataclass(frozen=True)
class PaymentEvent:
    """A verified notification from the payment provider.

    Attributes:
        type: Event type, e.g. ``payment_intent.succeeded``.
        object_id: Id of the provider object the event is about.
        metadata: Provider metadata; ``orderId`` links back to the order.
        payment_intent_id: Intent involved, when the event names one.
    """

    type: str
    object_id: str
    metadata: dict = field(default_factory=dict)
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class CreateOrderCommand:
    user_id: int
    shipping_address: Address
    billing_address: Address
    items: List[LineItem]
    shipping_carrier: str
    shipping_service: Optional[str] = None
    currency: str = "USD"
    coupon_code: Optional[str] = None
    email: Optional[str] = None


def select_shipping_rate(rates: Iterable[ShippingRate], carrier: str, service: Optional[str] = None) -> ShippingRate:
    """Pick the rate for the requested carrier and service.

    Carrier and service are compared case-insensitively. Without a service the
    carrier alone must identify exactly one rate.

    Raises:
        BadRequestError: When nothing matches, or when the match is ambiguous.
    """
    matches = [r for r in rates if r.carrier.lower() == carrier.lower()]
    if service:
        matches = [r for r in matches if r.service.lower() == service.lower()]
    label = f"{carrier} {service}" if service else carrier
    if not matches:
        raise BadRequestError(f"No shipping rate available for {label}.", reason="SHIPPING_RATE_UNAVAILABLE")
    if len(matches) > 1:
        raise BadRequestError(
            f"Several shipping services match {label}; specify the service.",
            reason="SHIPPING_RATE_AMBIGUOUS",
        )
    return matches[0]


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Stock operations keyed by product variant id."""

    def is_in_stock(self, variant_id: int, quantity: int) -> bool: ...

    def reserve_stock(self, variant_id: int, quantity: int, key: Optional[str] = None) -> None:
        """Hold units for an order being placed.

        A write sent with ``key`` is applied at most once, however often it is
        resent.

        Raises:
            OutOfStockError: Not enough on hand, no record, or the ledger
                lost every retry against concurrent writers.
        """
        ...

    def release_stock(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None:
        """Return held units. With ``reservation_key`` this only releases a
        reservation that landed and was not committed; a reservation that
        never landed is voided so a late copy of it is ignored.
        """
        ...

    def commit_reservation(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None: ...

    def update_quantity(
        self,
        variant_id: int,
        quantity: int,
        operator: StockOperator = StockOperator.SET,
        key: Optional[str] = None,
        requires: Optional[str] = None,
    ) -> None:
        """Adjust on-hand stock. With ``requires`` the adjustment only applies
        once the write recorded under that key has landed.
        """
        ...

    def create_inventory_for_variant(self, variant_id: int, initial_quantity: int) -> None: ...

    def get_quantity_on_hand(self, variant_id: int) -> int: ...

    def get_reserved_quantity(self, variant_id: int) -> int: ...


class ShippingPort(Protocol):
    def get_rates(self, requests: List[ShippingRateRequest]) -> List[ShippingRate]: ...

    def create_shipment(self, requests: List[ShippingRateRequest]) -> Shipment: ...

    def track(self, tracking_number: str) -> TrackingInfo: ...

    def cancel(self, tracking_number: str) -> None: ...


class PaymentsPort(Protocol):
    """Payment provider operations used by the orchestrator."""

    def create_payment_intent(self, amount: Decimal, currency: str, order_id: int) -> PaymentIntent: ...

    def create_checkout_session(
        self,
        items: List[CheckoutLine],
        currency: str,
        order_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    def create_refund(self, payment_intent_id: str, amount: Decimal, order_id: int) -> Optional[Refund]:
        """Refund ``amount`` of an intent. Returns None when the provider declines."""
        ...

    def verify_webhook_signature(self, payload: bytes, signature_header: str) -> PaymentEvent:
        """Authenticate a webhook body.

        Raises:
            BadRequestError: When the signature is missing, malformed,
                mismatched or too old.
        """
        ...


class NotificationsPort(Protocol):
    def send_order_confirmation(self, order: Order) -> None: ...

    def send_shipping_update(self, order: Order, status: OrderStatus) -> None: ...


class CatalogPort(Protocol):
    def get_products(self, ids: Iterable[int]) -> dict[int, Product]: ...


class CartPort(Protocol):
    def get_cart_by_user(self, user_id: int) -> Optional[Cart]: ...

    def clear_cart(self, cart_id: int) -> None: ...


class OrderRepositoryPort(Protocol):
    def add(self, order: Order) -> Order: ...

    def get(self, order_id: int) -> Optional[Order]: ...

    def get_for_update(self, order_id: int) -> Optional[Order]: ...

    def append_history(self, order: Order, entry: HistoryEntry) -> None: ...

    def save(self, order: Order) -> None: ...

    def list_page(self, page: int, page_size: int) -> tuple[List[Order], int]: ...

    def list_by_user(self, user_id: int) -> List[Order]: ...

    def delete(self, order_id: int) -> bool: ...
