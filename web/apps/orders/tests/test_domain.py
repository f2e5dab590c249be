from datetime import date
from decimal import Decimal

import pytest

from apps.orders.domain import (
    ALLOWED_TRANSITIONS,
    OrderStatus,
    ShippingRate,
    can_transition,
    ensure_transition,
    select_shipping_rate,
    to_cents,
)
from apps.orders.errors import BadRequestError, InvalidTransitionError

ALLOWED = {
    ("PENDING", "PAID"),
    ("PENDING", "CANCELLED"),
    ("PAID", "PROCESSING"),
    ("PAID", "CANCELLED"),
    ("PROCESSING", "SHIPPED"),
    ("PROCESSING", "CANCELLED"),
    ("SHIPPED", "DELIVERED"),
}


@pytest.mark.parametrize("current", list(OrderStatus))
@pytest.mark.parametrize("new", list(OrderStatus))
def test_transition_table_covers_every_status_pair(current, new):
    expected = (current.value, new.value) in ALLOWED
    assert can_transition(current, new) is expected
    if expected:
        ensure_transition(current, new)
    else:
        with pytest.raises(InvalidTransitionError) as exc:
            ensure_transition(current, new)
        assert exc.value.code == "INVALID_TRANSITION"
        assert isinstance(exc.value, BadRequestError)


def test_terminal_statuses_have_no_exits():
    assert ALLOWED_TRANSITIONS[OrderStatus.DELIVERED] == frozenset()
    assert ALLOWED_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()


def _rate(carrier, service):
    return ShippingRate(carrier, service, Decimal("10.00"), Decimal("5.00"), Decimal("2.00"), "USD", date(2030, 1, 1))


RATES = [_rate("DHL", "Ground"), _rate("FedEx", "2nd Day Air"), _rate("FedEx", "Overnight")]


def test_select_rate_by_carrier_and_service():
    assert select_shipping_rate(RATES, "fedex", "overnight").service == "Overnight"


def test_select_rate_by_carrier_only_when_unambiguous():
    assert select_shipping_rate(RATES, "DHL").service == "Ground"


def test_select_rate_ambiguous_carrier_is_rejected():
    with pytest.raises(BadRequestError) as exc:
        select_shipping_rate(RATES, "FedEx")
    assert exc.value.reason == "SHIPPING_RATE_AMBIGUOUS"


def test_select_rate_unknown_carrier_is_rejected():
    with pytest.raises(BadRequestError) as exc:
        select_shipping_rate(RATES, "UPS", "Ground")
    assert exc.value.reason == "SHIPPING_RATE_UNAVAILABLE"


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("110.00")) == 11000
    assert to_cents(Decimal("0.005")) == 1
