import json
from decimal import Decimal

import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    from apps.orders import providers

    providers.reset_stubs()
    yield
    providers.reset_stubs()


@pytest.fixture
def inventory():
    from apps.orders import providers

    return providers.inventory_stub()


@pytest.fixture
def payments():
    from apps.orders import providers

    return providers.payments_stub()


@pytest.fixture
def product(db):
    from apps.catalog.models import Product

    return Product.objects.create(
        name="Trail Shoe",
        price=Decimal("50.00"),
        weight=Decimal("1.200"),
        width=Decimal("30"),
        height=Decimal("12"),
        length=Decimal("20"),
        hosted_at=Product.HostedAt.WAREHOUSE,
    )


@pytest.fixture
def make_variant(db, django_capture_on_commit_callbacks):
    """Create a variant and run its on-commit inventory seeding."""
    from apps.catalog.models import ProductVariant

    def make(**fields):
        with django_capture_on_commit_callbacks(execute=True):
            return ProductVariant.objects.create(**fields)

    return make


@pytest.fixture
def variant(product, make_variant):
    # creating the variant seeds 10 units in the inventory stub
    return make_variant(product=product, sku="SHOE-42", quantity=10)


@pytest.fixture
def cart(product, variant):
    from apps.catalog.models import Cart, CartItem

    c = Cart.objects.create(user_id=7)
    CartItem.objects.create(cart=c, product=product, variant=variant, quantity=2)
    return c


@pytest.fixture
def address():
    return {
        "street": "10 Main St",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
    }


@pytest.fixture
def order_payload(product, variant, address):
    return {
        "user_id": 7,
        "shipping_address": address,
        "items": [
            {"product_id": product.id, "variant_id": variant.id, "quantity": 2, "price_at_purchase": "50.00"},
        ],
        "currency": "USD",
        "shipping_carrier": "DHL",
        "shipping_service": "Ground",
        "email": "buyer@example.com",
    }


@pytest.fixture
def signed_event(settings):
    """Build ``(body, headers)`` for a webhook request signed with the configured secret."""
    from apps.orders.webhooks import sign_payload

    def build(event_type: str, order_id, intent_id: str = "pi_test_1", object_type: str = "payment_intent"):
        metadata = {} if order_id is None else {"orderId": str(order_id)}
        obj = {"id": intent_id, "object": object_type, "metadata": metadata}
        if object_type == "checkout.session":
            obj = {"id": "cs_test_1", "object": object_type, "payment_intent": intent_id, "metadata": metadata}
        body = json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode("utf-8")
        header = sign_payload(body, settings.PAYMENTS_WEBHOOK_SECRET)
        return body, {"HTTP_PAYMENTS_SIGNATURE": header}

    return build
