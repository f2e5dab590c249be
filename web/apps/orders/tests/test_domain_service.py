from decimal import Decimal

import pytest

from apps.catalog.models import CartItem, Product
from apps.catalog.repository import CartRepository
from apps.orders import providers
from apps.orders.adapters import InventoryStub, ShippingStub
from apps.orders.domain import Address, CreateOrderCommand, LineItem, OrderStatus, PaymentEvent
from apps.orders.errors import (
    BadRequestError,
    InvalidTransitionError,
    NotFoundError,
    OutOfStockError,
    PaymentError,
    UpstreamUnavailableError,
)
from apps.orders.models import OrderHistoryModel, OrderModel
from apps.orders.notifications import EmailNotifier

DEST = Address(street="10 Main St", city="Springfield", state="IL", postal_code="62701", country="US")


def command(product, variant, quantity=2, carrier="DHL", service="Ground", user_id=7, email="buyer@example.com"):
    return CreateOrderCommand(
        user_id=user_id,
        shipping_address=DEST,
        billing_address=DEST,
        items=[LineItem(product.id, variant.id, quantity, Decimal("50.00"))],
        shipping_carrier=carrier,
        shipping_service=service,
        email=email,
    )


def paid_event(order_id, intent_id="pi_stub_1", event_type="payment_intent.succeeded"):
    metadata = {} if order_id is None else {"orderId": str(order_id)}
    return PaymentEvent(type=event_type, object_id=intent_id, metadata=metadata, payment_intent_id=intent_id)


@pytest.fixture
def service():
    return providers.get_order_service()


# ---- create ----

@pytest.mark.django_db
def test_create_order_happy_path_with_dhl(service, product, variant, cart, inventory, mailoutbox):
    order = service.create_order(command(product, variant))

    assert order.id is not None
    assert order.status is OrderStatus.PENDING
    assert order.total_amount == Decimal("110.00")  # cart 100.00 + DHL Ground 10.00
    assert [(i.variant_id, i.quantity, i.price_at_purchase) for i in order.items] == [
        (variant.id, 2, Decimal("50.00"))
    ]
    assert [(h.previous_status, h.new_status, h.notes) for h in order.history] == [
        (OrderStatus.PENDING, OrderStatus.PENDING, "Order created.")
    ]
    assert inventory.get_quantity_on_hand(variant.id) == 8
    assert inventory.get_reserved_quantity(variant.id) == 0
    assert CartItem.objects.filter(cart=cart).count() == 0
    assert len(mailoutbox) == 1
    assert mailoutbox[0].to == ["buyer@example.com"]


@pytest.mark.django_db
def test_create_order_with_carrier_only_when_unambiguous(service, product, variant, cart):
    order = service.create_order(command(product, variant, service=None))
    assert order.total_amount == Decimal("110.00")


@pytest.mark.django_db
def test_create_order_insufficient_stock(service, product, variant, cart, inventory):
    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(product, variant, quantity=11))

    assert exc.value.reason == "OUT_OF_STOCK"
    assert str(exc.value).startswith("An error occurred while processing your order.")
    assert isinstance(exc.value.__cause__, OutOfStockError)
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_create_order_without_cart_persists_nothing_and_releases_stock(service, product, variant, inventory):
    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(product, variant))

    assert exc.value.reason == "NOT_FOUND"
    assert OrderModel.objects.count() == 0
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0


@pytest.mark.django_db
def test_failure_after_commit_returns_committed_stock(service, product, variant, cart, inventory, monkeypatch):
    def broken_clear(self, cart_id):
        raise RuntimeError("cart store down")

    monkeypatch.setattr(CartRepository, "clear_cart", broken_clear)

    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(product, variant))

    assert exc.value.reason == "RuntimeError"
    assert "cart store down" in str(exc.value)
    assert OrderModel.objects.count() == 0
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0


@pytest.mark.django_db
def test_reservation_whose_answer_was_lost_is_released(service, product, variant, cart, inventory, monkeypatch):
    original = InventoryStub.reserve_stock

    def lost_answer(self, variant_id, quantity, key=None):
        original(self, variant_id, quantity, key=key)
        raise UpstreamUnavailableError("inventory unavailable: read timeout")

    monkeypatch.setattr(InventoryStub, "reserve_stock", lost_answer)

    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(product, variant))

    assert exc.value.reason == "UPSTREAM_UNAVAILABLE"
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0


@pytest.mark.django_db
def test_commit_whose_answer_was_lost_is_restocked(service, product, variant, cart, inventory, monkeypatch):
    original = InventoryStub.commit_reservation

    def lost_answer(self, variant_id, quantity, key=None, reservation_key=None):
        original(self, variant_id, quantity, key=key, reservation_key=reservation_key)
        raise UpstreamUnavailableError("inventory unavailable: read timeout")

    monkeypatch.setattr(InventoryStub, "commit_reservation", lost_answer)

    with pytest.raises(BadRequestError):
        service.create_order(command(product, variant))

    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0


@pytest.mark.django_db
def test_out_of_stock_reservation_is_not_released(service, product, variant, cart, inventory, monkeypatch):
    def refused(self, variant_id, quantity, key=None):
        raise OutOfStockError("Insufficient stock available.")

    monkeypatch.setattr(InventoryStub, "reserve_stock", refused)

    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(product, variant))

    assert exc.value.reason == "OUT_OF_STOCK"
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0

@pytest.mark.django_db
def test_create_order_restores_every_variant_touched(service, product, variant, inventory, make_variant):
    other = make_variant(product=product, sku="SHOE-43", quantity=5)
    cmd = command(product, variant)
    cmd = CreateOrderCommand(
        user_id=cmd.user_id,
        shipping_address=DEST,
        billing_address=DEST,
        items=[LineItem(product.id, variant.id, 3, Decimal("50.00")), LineItem(product.id, other.id, 4, Decimal("50.00"))],
        shipping_carrier="UPS",
    )

    with pytest.raises(BadRequestError) as exc:
        service.create_order(cmd)

    assert exc.value.reason == "SHIPPING_RATE_UNAVAILABLE"
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_quantity_on_hand(other.id) == 5
    assert inventory.get_reserved_quantity(other.id) == 0


@pytest.mark.django_db
def test_create_order_rejects_variant_of_another_product(service, product, variant, cart):
    shirt = Product.objects.create(name="Shirt", price=Decimal("20.00"))
    with pytest.raises(BadRequestError) as exc:
        service.create_order(command(shirt, variant))
    assert exc.value.reason == "NOT_FOUND"


def test_create_order_rejects_empty_order(service):
    cmd = CreateOrderCommand(user_id=7, shipping_address=DEST, billing_address=DEST, items=[], shipping_carrier="DHL")
    with pytest.raises(BadRequestError) as exc:
        service.create_order(cmd)
    assert exc.value.reason == "EMPTY_ORDER"


@pytest.mark.django_db
def test_notification_failure_does_not_fail_creation(service, product, variant, cart, monkeypatch):
    def boom(self, order):
        raise ConnectionError("smtp down")

    monkeypatch.setattr(EmailNotifier, "send_order_confirmation", boom)
    order = service.create_order(command(product, variant))
    assert OrderModel.objects.filter(pk=order.id).exists()


# ---- preview ----

@pytest.mark.django_db
def test_preview_prices_items_and_lists_rates_without_reserving(service, product, variant, inventory):
    preview = service.get_order_preview([LineItem(product.id, variant.id, 2, Decimal("50.00"))], DEST)

    assert preview.total_amount == Decimal("100.00")
    assert {(r.carrier, r.service) for r in preview.available_shipping_rates} == {
        ("DHL", "Ground"),
        ("FedEx", "2nd Day Air"),
    }
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert inventory.get_reserved_quantity(variant.id) == 0


@pytest.mark.django_db
def test_preview_out_of_stock(service, product, variant):
    with pytest.raises(OutOfStockError):
        service.get_order_preview([LineItem(product.id, variant.id, 50, Decimal("50.00"))], DEST)


@pytest.mark.django_db
def test_preview_unknown_product(service, variant):
    with pytest.raises(NotFoundError):
        service.get_order_preview([LineItem(999999, variant.id, 1, Decimal("1.00"))], DEST)


@pytest.mark.django_db
def test_preview_ships_store_products_from_the_seller(service, monkeypatch, settings, make_variant):
    captured = []
    original = ShippingStub.get_rates

    def spy(self, requests):
        captured.extend(requests)
        return original(self, requests)

    monkeypatch.setattr(ShippingStub, "get_rates", spy)
    store = Product.objects.create(
        name="Mug", price=Decimal("12.00"), hosted_at=Product.HostedAt.STORE, seller_postal_code="94103"
    )
    mug = make_variant(product=store, sku="MUG-1", quantity=3)
    shoe = Product.objects.create(name="Shoe", price=Decimal("40.00"))
    shoe_v = make_variant(product=shoe, sku="SHOE-1", quantity=3)

    service.get_order_preview(
        [LineItem(store.id, mug.id, 1, Decimal("12.00")), LineItem(shoe.id, shoe_v.id, 1, Decimal("40.00"))], DEST
    )

    assert captured[0].origin.postal_code == "94103"
    assert captured[1].origin.postal_code == settings.WAREHOUSE_ADDRESS["postal_code"]
    assert all(r.destination == DEST for r in captured)


# ---- status ----

@pytest.mark.django_db
def test_status_update_appends_history_and_notifies_on_shipped(service, product, variant, cart, mailoutbox):
    order = service.create_order(command(product, variant))
    for status in ("PAID", "PROCESSING", "SHIPPED"):
        order = service.update_order_status(order.id, status, notes=f"to {status}")

    assert order.status is OrderStatus.SHIPPED
    assert [h.new_status.value for h in service.get_order(order.id).history] == [
        "PENDING",
        "PAID",
        "PROCESSING",
        "SHIPPED",
    ]
    assert len(mailoutbox) == 2  # confirmation + shipped


@pytest.mark.django_db
def test_invalid_transition_leaves_order_unchanged(service, product, variant, cart):
    order = service.create_order(command(product, variant))

    with pytest.raises(InvalidTransitionError):
        service.update_order_status(order.id, OrderStatus.SHIPPED)

    reloaded = service.get_order(order.id)
    assert reloaded.status is OrderStatus.PENDING
    assert len(reloaded.history) == 1


@pytest.mark.django_db
def test_status_update_unknown_order(service):
    with pytest.raises(NotFoundError):
        service.update_order_status(424242, OrderStatus.PAID)


# ---- cancel ----

@pytest.mark.django_db
def test_cancel_pending_order_without_payment_returns_stock(service, product, variant, cart, inventory, payments):
    order = service.create_order(command(product, variant))
    cancelled = service.cancel_order(order.id)

    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.history[-1].notes == "Order cancelled."
    assert payments.refunds == []
    assert inventory.get_quantity_on_hand(variant.id) == 10


@pytest.mark.django_db
def test_cancel_paid_order_refunds_total(service, product, variant, cart, inventory, payments):
    order = service.create_order(command(product, variant))
    intent = service.create_payment_intent(order.id)
    service.handle_payment_event(paid_event(order.id, intent.id))

    cancelled = service.cancel_order(order.id)

    assert cancelled.status is OrderStatus.CANCELLED
    assert [(r.payment_intent_id, r.amount) for r in payments.refunds] == [(intent.id, Decimal("110.00"))]
    assert inventory.get_quantity_on_hand(variant.id) == 10


@pytest.mark.django_db
def test_refund_failure_rolls_back_cancellation(service, product, variant, cart, inventory, payments):
    order = service.create_order(command(product, variant))
    intent = service.create_payment_intent(order.id)
    service.handle_payment_event(paid_event(order.id, intent.id))
    payments.decline_refunds = True

    with pytest.raises(PaymentError):
        service.cancel_order(order.id)

    reloaded = service.get_order(order.id)
    assert reloaded.status is OrderStatus.PAID
    assert [h.new_status for h in reloaded.history] == [OrderStatus.PENDING, OrderStatus.PAID]
    assert inventory.get_quantity_on_hand(variant.id) == 8


@pytest.mark.django_db
def test_refund_exception_is_reported_as_payment_error(service, product, variant, cart, payments, monkeypatch):
    order = service.create_order(command(product, variant))
    intent = service.create_payment_intent(order.id)

    def explode(*args, **kwargs):
        raise ConnectionError("provider unreachable")

    monkeypatch.setattr(payments, "create_refund", explode)
    with pytest.raises(PaymentError) as exc:
        service.cancel_order(order.id)
    assert "provider unreachable" in str(exc.value)
    assert service.get_order(order.id).payment_intent_id == intent.id
    assert service.get_order(order.id).status is OrderStatus.PENDING


@pytest.mark.django_db
def test_cancel_paid_order_without_payment_intent_fails(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    service.update_order_status(order.id, OrderStatus.PAID)

    with pytest.raises(PaymentError):
        service.cancel_order(order.id)
    assert service.get_order(order.id).status is OrderStatus.PAID


@pytest.mark.django_db
def test_double_cancellation_is_rejected(service, product, variant, cart, inventory):
    order = service.create_order(command(product, variant))
    service.cancel_order(order.id)

    with pytest.raises(BadRequestError) as exc:
        service.cancel_order(order.id)

    assert exc.value.reason == "ORDER_FINALIZED"
    assert inventory.get_quantity_on_hand(variant.id) == 10
    assert OrderHistoryModel.objects.filter(order_id=order.id).count() == 2


@pytest.mark.django_db
def test_shipped_order_cannot_be_cancelled(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    for status in ("PAID", "PROCESSING", "SHIPPED"):
        service.update_order_status(order.id, status)

    with pytest.raises(InvalidTransitionError):
        service.cancel_order(order.id)


# ---- payment reconciliation ----

@pytest.mark.django_db
def test_payment_succeeded_marks_order_paid_once(service, product, variant, cart):
    order = service.create_order(command(product, variant))

    paid = service.handle_payment_event(paid_event(order.id, "pi_ext_9"))
    again = service.handle_payment_event(paid_event(order.id, "pi_ext_9"))

    assert paid.status is OrderStatus.PAID
    assert paid.payment_intent_id == "pi_ext_9"
    assert again.status is OrderStatus.PAID
    assert len(service.get_order(order.id).history) == 2


@pytest.mark.django_db
def test_checkout_completed_marks_order_paid(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    session = service.create_checkout_session(order.id, "https://shop/ok", "https://shop/cancel")

    event = PaymentEvent(
        type="checkout.session.completed",
        object_id=session.id,
        metadata={"orderId": str(order.id)},
        payment_intent_id=session.payment_intent_id,
    )
    paid = service.handle_payment_event(event)

    assert paid.status is OrderStatus.PAID
    assert paid.checkout_session_id == session.id
    assert paid.payment_intent_id == session.payment_intent_id


@pytest.mark.django_db
def test_payment_failed_keeps_order_pending_and_notes_it(service, product, variant, cart):
    order = service.create_order(command(product, variant))

    out = service.handle_payment_event(paid_event(order.id, event_type="payment_intent.payment_failed"))

    assert out.status is OrderStatus.PENDING
    assert service.get_order(order.id).history[-1].notes == "Payment failed."


@pytest.mark.django_db
def test_payment_event_for_cancelled_order_is_invalid(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    service.cancel_order(order.id)
    with pytest.raises(InvalidTransitionError):
        service.handle_payment_event(paid_event(order.id))


@pytest.mark.django_db
@pytest.mark.parametrize("order_id", [None, "", "abc", "12.5"])
def test_payment_event_with_bad_order_id(service, order_id):
    with pytest.raises(PaymentError):
        service.handle_payment_event(paid_event(order_id))


@pytest.mark.django_db
def test_payment_event_for_unknown_order(service):
    with pytest.raises(PaymentError):
        service.handle_payment_event(paid_event(987654))


def test_unrelated_payment_events_are_ignored(service):
    assert service.handle_payment_event(PaymentEvent(type="charge.refunded", object_id="ch_1")) is None


# ---- payment setup / admin ----

@pytest.mark.django_db
def test_payment_intent_requires_pending_order(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    intent = service.create_payment_intent(order.id)
    assert intent.amount == Decimal("110.00")
    assert service.get_order(order.id).payment_intent_id == intent.id

    service.cancel_order(order.id)
    with pytest.raises(BadRequestError) as exc:
        service.create_payment_intent(order.id)
    assert exc.value.reason == "ORDER_NOT_PENDING"


@pytest.mark.django_db
def test_delete_order(service, product, variant, cart):
    order = service.create_order(command(product, variant))
    service.delete_order(order.id)
    with pytest.raises(NotFoundError):
        service.get_order(order.id)
    with pytest.raises(NotFoundError):
        service.delete_order(order.id)
