"""Service provider helpers for wiring OrderService with ports.

``get_order_service`` returns an ``OrderService`` wired with the HTTP
adapter clients when ``settings.USE_HTTP_ADAPTERS`` is truthy, or with the
in-process stubs otherwise (tests and local development). Stubs keep state
(stock, intents, shipments), so one instance of each is shared per process;
``reset_stubs`` drops them.
"""

from functools import lru_cache

from django.conf import settings
from django.db import transaction

from apps.catalog.repository import CartRepository, CatalogRepository

from .adapters import InventoryStub, PaymentsStub, ShippingStub
from .domain import Address, InventoryPort, PaymentsPort, ShippingPort
from .http_adapters import HttpInventoryClient, HttpPaymentsClient, HttpShippingClient
from .notifications import EmailNotifier
from .repository import OrderRepository
from .service import OrderService


@lru_cache(maxsize=None)
def inventory_stub() -> InventoryStub:
    return InventoryStub()


@lru_cache(maxsize=None)
def shipping_stub() -> ShippingStub:
    return ShippingStub()


@lru_cache(maxsize=None)
def payments_stub() -> PaymentsStub:
    return PaymentsStub(
        webhook_secret=settings.PAYMENTS_WEBHOOK_SECRET,
        webhook_tolerance=getattr(settings, "PAYMENTS_WEBHOOK_TOLERANCE_SECS", 300),
    )


def reset_stubs() -> None:
    for factory in (inventory_stub, shipping_stub, payments_stub):
        factory.cache_clear()


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def get_inventory() -> InventoryPort:
    return HttpInventoryClient() if _use_http() else inventory_stub()


def get_shipping() -> ShippingPort:
    return HttpShippingClient() if _use_http() else shipping_stub()


def get_payments() -> PaymentsPort:
    return HttpPaymentsClient() if _use_http() else payments_stub()


def warehouse_address() -> Address:
    return Address(**getattr(settings, "WAREHOUSE_ADDRESS", {}))


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service instance with appropriate ports.
    """
    return OrderService(
        inventory=get_inventory(),
        shipping=get_shipping(),
        payments=get_payments(),
        notifications=EmailNotifier(),
        catalog=CatalogRepository(),
        carts=CartRepository(),
        orders=OrderRepository(),
        atomic=transaction.atomic,
        warehouse_address=warehouse_address(),
    )
