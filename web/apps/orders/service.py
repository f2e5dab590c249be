"""Order orchestration: preview, creation, status changes, cancellation and
payment reconciliation.

``OrderService`` coordinates the collaborators described in ``domain``. It
never talks to a database or a network directly; every side effect goes
through an injected port. The ``atomic`` factory delimits the orders-database
unit of work (``django.db.transaction.atomic`` in the web app).

Stock lives in a separate service, so rolling back the orders transaction
does not undo reservations. ``create_order`` therefore keeps track of every
hold it takes and compensates them explicitly once the transaction has been
rolled back.
"""

import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, List, Optional

from .domain import (
    TERMINAL_STATUSES,
    Address,
    CartPort,
    CatalogPort,
    CheckoutLine,
    CheckoutSession,
    CreateOrderCommand,
    HistoryEntry,
    HostedAt,
    InventoryPort,
    LineItem,
    NotificationsPort,
    Order,
    OrderItem,
    OrderPreview,
    OrderRepositoryPort,
    OrderStatus,
    PaymentEvent,
    PaymentIntent,
    PaymentsPort,
    Product,
    ShippingPort,
    ShippingRateRequest,
    StockOperator,
    TrackingInfo,
    ensure_transition,
    select_shipping_rate,
    to_money,
)
from .errors import (
    BadRequestError,
    InvalidTransitionError,
    NotFoundError,
    OutOfStockError,
    PaymentError,
)

logger = logging.getLogger("orders.service")

PAYMENT_SUCCEEDED_EVENTS = frozenset({"payment_intent.succeeded", "checkout.session.completed"})
PAYMENT_FAILED_EVENT = "payment_intent.payment_failed"

REFUNDABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID})
NOTIFY_ON_STATUS = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})


@dataclass
class _Hold:
    """Stock taken from the ledger while an order is being created.

    A hold is recorded before its reservation is sent, since a reservation
    whose response was lost may still have landed. Every ledger write for the
    hold carries a key derived from ``key``.
    """

    variant_id: int
    quantity: int
    key: str
    commit_sent: bool = False

    def write_key(self, operation: str) -> str:
        return f"{self.key}-{operation}"


class OrderService:
    """Domain service responsible for the order lifecycle.

    Args:
        inventory: Ledger used to check, reserve and return stock.
        shipping: Gateway quoting rates and tracking shipments.
        payments: Gateway for intents, checkout sessions, refunds and
            webhook verification.
        notifications: Best-effort customer notifications.
        catalog: Product lookup.
        carts: Cart lookup and clearing.
        orders: Order persistence.
        atomic: Factory returning the unit-of-work context manager.
        warehouse_address: Origin used for warehouse-hosted products.
    """

    def __init__(
        self,
        inventory: InventoryPort,
        shipping: ShippingPort,
        payments: PaymentsPort,
        notifications: NotificationsPort,
        catalog: CatalogPort,
        carts: CartPort,
        orders: OrderRepositoryPort,
        atomic: Optional[Callable] = None,
        warehouse_address: Optional[Address] = None,
    ):
        self.inventory = inventory
        self.shipping = shipping
        self.payments = payments
        self.notifications = notifications
        self.catalog = catalog
        self.carts = carts
        self.orders = orders
        self.atomic = atomic or nullcontext
        self.warehouse_address = warehouse_address or Address()

    # ---- Preview ----
    def get_order_preview(self, items: List[LineItem], shipping_address: Address, currency: str = "USD") -> OrderPreview:
        """Price an order without touching stock or storage.

        Raises:
            NotFoundError: Unknown product, or a variant of another product.
            OutOfStockError: A line cannot be covered by on-hand stock.
        """
        products = self.catalog.get_products({i.product_id for i in items})
        requests = []
        for item in items:
            product = self._product_for(products, item)
            if not self.inventory.is_in_stock(item.variant_id, item.quantity):
                raise OutOfStockError(f"Insufficient stock for variant {item.variant_id}.")
            requests.append(self._rate_request(product, item, shipping_address))

        rates = self.shipping.get_rates(requests)
        total = sum((Decimal(i.quantity) * i.price_at_purchase for i in items), Decimal("0"))
        return OrderPreview(
            items=list(items),
            currency=currency,
            total_amount=to_money(total),
            available_shipping_rates=list(rates),
        )

    # ---- Create ----
    def create_order(self, cmd: CreateOrderCommand) -> Order:
        """Reserve stock, price shipping and persist a new PENDING order.

        On any failure the orders transaction is rolled back first, then the
        stock taken so far is handed back to the ledger, and a
        ``BadRequestError`` wrapping the original error is raised. Its
        ``reason`` keeps the original error code.

        Raises:
            BadRequestError: For an empty order or any failure while placing it.
        """
        if not cmd.items:
            raise BadRequestError("Order must contain at least one item.", reason="EMPTY_ORDER")

        holds: List[_Hold] = []
        attempt = uuid.uuid4().hex
        try:
            with self.atomic():
                order = self._place(cmd, holds, attempt)
        except Exception as exc:
            self._compensate(holds)
            reason = getattr(exc, "code", type(exc).__name__)
            logger.warning(
                "order creation failed",
                extra={"user_id": cmd.user_id, "reason": reason, "holds": len(holds)},
            )
            raise BadRequestError(f"An error occurred while processing your order. {exc}", reason=reason) from exc

        logger.info(
            "order created",
            extra={"order_id": order.id, "user_id": order.user_id, "total_amount": str(order.total_amount)},
        )
        self._notify("order_confirmation", self.notifications.send_order_confirmation, order)
        return order

    def _place(self, cmd: CreateOrderCommand, holds: List[_Hold], attempt: str) -> Order:
        products = self.catalog.get_products({i.product_id for i in cmd.items})
        requests = []
        for index, item in enumerate(cmd.items):
            product = self._product_for(products, item)
            if not self.inventory.is_in_stock(item.variant_id, item.quantity):
                raise OutOfStockError(f"Insufficient stock for variant {item.variant_id}.")
            hold = _Hold(item.variant_id, item.quantity, key=f"order-attempt-{attempt}-{index}")
            holds.append(hold)
            self.inventory.reserve_stock(hold.variant_id, hold.quantity, key=hold.write_key("reserve"))
            requests.append(self._rate_request(product, item, cmd.shipping_address))

        rate = select_shipping_rate(self.shipping.get_rates(requests), cmd.shipping_carrier, cmd.shipping_service)

        cart = self.carts.get_cart_by_user(cmd.user_id)
        if cart is None:
            raise NotFoundError(f"Cart not found for user {cmd.user_id}.")

        order = Order(
            id=None,
            user_id=cmd.user_id,
            status=OrderStatus.PENDING,
            shipping_address=cmd.shipping_address,
            billing_address=cmd.billing_address,
            currency=cmd.currency,
            total_amount=to_money(cart.total_price + rate.total_rate),
            items=[
                OrderItem(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    price_at_purchase=to_money(i.price_at_purchase),
                )
                for i in cmd.items
            ],
            history=[HistoryEntry(OrderStatus.PENDING, OrderStatus.PENDING, "Order created.")],
            applied_coupon_code=cmd.coupon_code,
            email=cmd.email,
        )

        for hold in holds:
            hold.commit_sent = True
            self.inventory.commit_reservation(
                hold.variant_id,
                hold.quantity,
                key=hold.write_key("commit"),
                reservation_key=hold.write_key("reserve"),
            )

        order = self.orders.add(order)
        self.carts.clear_cart(cart.id)
        return order

    def _compensate(self, holds: List[_Hold]) -> None:
        # runs outside the rolled-back transaction; each call is its own write.
        # The ledger skips a restock whose commit never landed and a release
        # whose reservation never landed or was committed.
        for hold in reversed(holds):
            try:
                if hold.commit_sent:
                    self.inventory.update_quantity(
                        hold.variant_id,
                        hold.quantity,
                        StockOperator.ADD,
                        key=hold.write_key("restock"),
                        requires=hold.write_key("commit"),
                    )
                self.inventory.release_stock(
                    hold.variant_id,
                    hold.quantity,
                    key=hold.write_key("release"),
                    reservation_key=hold.write_key("reserve"),
                )
            except Exception:
                logger.exception(
                    "stock compensation failed",
                    extra={"variant_id": hold.variant_id, "quantity": hold.quantity, "commit_sent": hold.commit_sent},
                )

    # ---- Status ----
    def update_order_status(self, order_id: int, new_status, notes: Optional[str] = None) -> Order:
        """Move an order to ``new_status`` through the transition table.

        Raises:
            NotFoundError: Unknown order.
            BadRequestError: Unknown status or a forbidden transition.
        """
        new_status = self._parse_status(new_status)
        with self.atomic():
            order = self._locked(order_id)
            previous = order.status
            ensure_transition(previous, new_status)
            self._transition(order, new_status, notes)

        logger.info(
            "order status changed",
            extra={"order_id": order.id, "from": previous.value, "to": new_status.value},
        )
        if new_status in NOTIFY_ON_STATUS:
            self._notify("shipping_update", self.notifications.send_shipping_update, order, new_status)
        return order

    # ---- Cancel ----
    def cancel_order(self, order_id: int) -> Order:
        """Cancel an order, refunding it when money may have been collected.

        The refund happens inside the transaction, so a failed refund leaves
        the order untouched. Stock goes back to the ledger after commit.

        Raises:
            NotFoundError: Unknown order.
            BadRequestError: Order already finished, or not cancellable from
                its current status.
            PaymentError: Refund declined or failed, or a paid order without
                a payment to refund.
        """
        with self.atomic():
            order = self._locked(order_id)
            previous = order.status
            if previous in TERMINAL_STATUSES:
                raise BadRequestError(
                    f"Order {order_id} cannot be cancelled because it is already {previous.value}.",
                    reason="ORDER_FINALIZED",
                )
            ensure_transition(previous, OrderStatus.CANCELLED)
            self._transition(order, OrderStatus.CANCELLED, "Order cancelled.")

            if previous in REFUNDABLE_STATUSES:
                if order.payment_intent_id:
                    self._refund(order)
                elif previous is OrderStatus.PAID:
                    raise PaymentError(f"Order {order_id} is paid but has no payment to refund.")

        for index, item in enumerate(order.items):
            try:
                self.inventory.update_quantity(
                    item.variant_id, item.quantity, StockOperator.ADD, key=f"order-{order.id}-cancel-{index}"
                )
            except Exception:
                logger.exception(
                    "stock return failed",
                    extra={"order_id": order.id, "variant_id": item.variant_id, "quantity": item.quantity},
                )
        logger.info("order cancelled", extra={"order_id": order.id, "from": previous.value})
        return order

    def _refund(self, order: Order) -> None:
        try:
            refund = self.payments.create_refund(order.payment_intent_id, order.total_amount, order.id)
        except Exception as exc:
            raise PaymentError(f"Refund failed for order {order.id}: {exc}") from exc
        if refund is None:
            raise PaymentError(f"Refund was declined for order {order.id}.")
        logger.info(
            "refund issued",
            extra={"order_id": order.id, "refund_id": refund.id, "amount": str(refund.amount)},
        )

    # ---- Payments ----
    def handle_payment_event(self, event: PaymentEvent) -> Optional[Order]:
        """Reconcile a verified provider event with the order it names.

        Returns:
            Order | None: The reconciled order, or None for event types that
            are not about order payment.

        Raises:
            PaymentError: The event names no order, a malformed id, or an
                unknown order.
            InvalidTransitionError: The order cannot take the payment outcome
                from its current status.
        """
        if event.type not in PAYMENT_SUCCEEDED_EVENTS and event.type != PAYMENT_FAILED_EVENT:
            logger.info("payment event ignored", extra={"event_type": event.type})
            return None

        order_id = self._order_id_from(event)
        with self.atomic():
            order = self.orders.get_for_update(order_id)
            if order is None:
                raise PaymentError(f"Order {order_id} referenced by payment event was not found.")

            if event.type == PAYMENT_FAILED_EVENT:
                if order.status is not OrderStatus.PENDING:
                    raise InvalidTransitionError(order.status, OrderStatus.PENDING)
                entry = HistoryEntry(OrderStatus.PENDING, OrderStatus.PENDING, "Payment failed.")
                self.orders.append_history(order, entry)
                order.history.append(entry)
                logger.warning("payment failed", extra={"order_id": order.id, "event_type": event.type})
                return order

            if order.status is OrderStatus.PAID:
                logger.info("duplicate payment event", extra={"order_id": order.id, "event_type": event.type})
                return order

            ensure_transition(order.status, OrderStatus.PAID)
            if not order.payment_intent_id and event.payment_intent_id:
                order.payment_intent_id = event.payment_intent_id
            self._transition(order, OrderStatus.PAID, f"Payment received ({event.type}).")

        logger.info("order paid", extra={"order_id": order.id, "payment_intent_id": order.payment_intent_id})
        return order

    def create_payment_intent(self, order_id: int) -> PaymentIntent:
        with self.atomic():
            order = self._pending(order_id)
            intent = self.payments.create_payment_intent(order.total_amount, order.currency, order.id)
            order.payment_intent_id = intent.id
            self.orders.save(order)
        logger.info("payment intent created", extra={"order_id": order.id, "payment_intent_id": intent.id})
        return intent

    def create_checkout_session(self, order_id: int, success_url: str, cancel_url: str) -> CheckoutSession:
        """Open a hosted checkout for a pending order.

        Lines are built from the order items. The gap between the items and
        the order total (shipping) is charged as its own line so the session
        collects exactly the order total.
        """
        with self.atomic():
            order = self._pending(order_id)
            products = self.catalog.get_products({i.product_id for i in order.items})
            lines = []
            subtotal = Decimal("0")
            for item in order.items:
                product = products.get(item.product_id)
                name = product.name if product else f"Product {item.product_id}"
                lines.append(CheckoutLine(name=name, unit_amount=item.price_at_purchase, quantity=item.quantity))
                subtotal += item.price_at_purchase * item.quantity
            shipping = to_money(order.total_amount - subtotal)
            if shipping > 0:
                lines.append(CheckoutLine(name="Shipping", unit_amount=shipping, quantity=1))

            session = self.payments.create_checkout_session(lines, order.currency, order.id, success_url, cancel_url)
            order.checkout_session_id = session.id
            if session.payment_intent_id and not order.payment_intent_id:
                order.payment_intent_id = session.payment_intent_id
            self.orders.save(order)
        return session

    # ---- Reads / admin ----
    def get_order(self, order_id: int) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found.")
        return order

    def list_orders(self, page: int = 1, page_size: int = 20) -> tuple[List[Order], int]:
        return self.orders.list_page(page, page_size)

    def list_orders_by_user(self, user_id: int) -> List[Order]:
        return self.orders.list_by_user(user_id)

    def delete_order(self, order_id: int) -> None:
        if not self.orders.delete(order_id):
            raise NotFoundError(f"Order {order_id} not found.")
        logger.info("order deleted", extra={"order_id": order_id})

    def track_shipment(self, tracking_number: str) -> TrackingInfo:
        return self.shipping.track(tracking_number)

    # ---- Helpers ----
    def _product_for(self, products: dict, item: LineItem) -> Product:
        product = products.get(item.product_id)
        if product is None:
            raise NotFoundError(f"Product {item.product_id} not found.")
        if not product.has_variant(item.variant_id):
            raise NotFoundError(f"Variant {item.variant_id} not found for product {item.product_id}.")
        return product

    def _rate_request(self, product: Product, item: LineItem, destination: Address) -> ShippingRateRequest:
        if product.hosted_at is HostedAt.STORE:
            origin = replace(self.warehouse_address, street="", city="", state="", postal_code=product.seller_postal_code)
        else:
            origin = self.warehouse_address
        return ShippingRateRequest(
            origin=origin,
            destination=destination,
            weight=product.weight,
            width=product.width,
            height=product.height,
            length=product.length,
            quantity=item.quantity,
        )

    def _locked(self, order_id: int) -> Order:
        order = self.orders.get_for_update(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found.")
        return order

    def _pending(self, order_id: int) -> Order:
        order = self._locked(order_id)
        if order.status is not OrderStatus.PENDING:
            raise BadRequestError(
                f"Order {order_id} is {order.status.value}; only pending orders can be paid.",
                reason="ORDER_NOT_PENDING",
            )
        return order

    def _transition(self, order: Order, new_status: OrderStatus, notes: Optional[str]) -> None:
        entry = HistoryEntry(order.status, new_status, notes)
        self.orders.append_history(order, entry)
        order.history.append(entry)
        order.status = new_status
        self.orders.save(order)

    @staticmethod
    def _parse_status(value) -> OrderStatus:
        try:
            return OrderStatus(value)
        except ValueError:
            raise BadRequestError(f"Unknown order status {value!r}.", reason="UNKNOWN_STATUS") from None

    @staticmethod
    def _order_id_from(event: PaymentEvent) -> int:
        raw = (event.metadata or {}).get("orderId")
        if raw is None or str(raw).strip() == "":
            raise PaymentError(f"Payment event {event.object_id} carries no order id.")
        try:
            return int(str(raw))
        except ValueError:
            raise PaymentError(f"Payment event {event.object_id} carries an invalid order id {raw!r}.") from None

    def _notify(self, kind: str, send: Callable, order: Order, *args) -> None:
        try:
            send(order, *args)
        except Exception:
            logger.exception("notification failed", extra={"order_id": order.id, "notification": kind})
