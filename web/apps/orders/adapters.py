"""In-process stub adapters for the orders domain ports.

These stubs implement ``InventoryPort``, ``ShippingPort`` and
``PaymentsPort`` without any network calls. They are intended for unit
tests and local development where deterministic behavior is useful and
external services are not required. The inventory stub follows the same
stock rules as the inventory service; the shipping stub quotes the fixed
placeholder rates.
"""

import itertools
import threading
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

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
    to_money,
)
from .errors import NotFoundError, OutOfStockError
from .webhooks import construct_event


class InventoryStub(InventoryPort):
    """Thread-safe in-memory ledger keyed by variant id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._stock: dict[int, dict] = {}
        self._ops: dict[str, str] = {}
        self._settled: set[str] = set()

    def seed(self, variant_id: int, quantity: int, reserved: int = 0) -> None:
        """Set the stock of a variant, replacing any existing record."""
        with self._lock:
            self._stock[variant_id] = {"on_hand": quantity, "reserved": reserved}

    def create_inventory_for_variant(self, variant_id: int, initial_quantity: int) -> None:
        self.seed(variant_id, initial_quantity)

    def is_in_stock(self, variant_id: int, quantity: int) -> bool:
        with self._lock:
            rec = self._stock.get(variant_id)
            return rec is not None and rec["on_hand"] >= quantity

    def get_quantity_on_hand(self, variant_id: int) -> int:
        with self._lock:
            rec = self._stock.get(variant_id)
            return rec["on_hand"] if rec else 0

    def get_reserved_quantity(self, variant_id: int) -> int:
        with self._lock:
            rec = self._stock.get(variant_id)
            return rec["reserved"] if rec else 0

    def reserve_stock(self, variant_id: int, quantity: int, key: Optional[str] = None) -> None:
        with self._lock:
            if self._replayed(key):
                return
            rec = self._stock.get(variant_id)
            if rec is None or rec["on_hand"] < quantity:
                raise OutOfStockError("Insufficient stock available.")
            rec["reserved"] += quantity
            rec["on_hand"] = max(0, rec["on_hand"] - quantity)
            self._record(key, "RESERVE")

    def release_stock(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None:
        with self._lock:
            if self._replayed(key):
                return
            rec = self._stock.get(variant_id)
            if rec is None:
                return
            if reservation_key is None or self._outstanding(reservation_key):
                rec["on_hand"] += quantity
                rec["reserved"] = max(0, rec["reserved"] - quantity)
            self._record(key, "RELEASE")

    def commit_reservation(
        self, variant_id: int, quantity: int, key: Optional[str] = None, reservation_key: Optional[str] = None
    ) -> None:
        with self._lock:
            if self._replayed(key):
                return
            rec = self._require(variant_id)
            rec["reserved"] = max(0, rec["reserved"] - quantity)
            self._record(key, "COMMIT")
            if reservation_key:
                self._settled.add(reservation_key)

    def update_quantity(
        self,
        variant_id: int,
        quantity: int,
        operator: StockOperator = StockOperator.SET,
        key: Optional[str] = None,
        requires: Optional[str] = None,
    ) -> None:
        operator = StockOperator(operator)
        with self._lock:
            if self._replayed(key):
                return
            rec = self._require(variant_id)
            if requires is None or self._landed(requires):
                if operator is StockOperator.ADD:
                    rec["on_hand"] += quantity
                elif operator is StockOperator.SUBTRACT:
                    if rec["on_hand"] < quantity:
                        raise OutOfStockError(f"Cannot subtract {quantity} units, only {rec['on_hand']} on hand.")
                    rec["on_hand"] -= quantity
                else:
                    rec["on_hand"] = quantity
            self._record(key, "ADJUST")

    def _replayed(self, key: Optional[str]) -> bool:
        return key is not None and key in self._ops

    def _record(self, key: Optional[str], operation: str) -> None:
        if key is not None:
            self._ops[key] = operation

    def _landed(self, key: str) -> bool:
        # a key that never landed is voided so a late copy of that write is ignored
        if key not in self._ops:
            self._ops[key] = "VOID"
            return False
        return self._ops[key] != "VOID"

    def _outstanding(self, reservation_key: str) -> bool:
        return self._landed(reservation_key) and reservation_key not in self._settled

    def _require(self, variant_id: int) -> dict:
        rec = self._stock.get(variant_id)
        if rec is None:
            raise NotFoundError(f"Inventory record not found for variant {variant_id}.")
        return rec


PLACEHOLDER_RATES = (("DHL", "Ground"), ("FedEx", "2nd Day Air"))


class ShippingStub(ShippingPort):
    """Quotes the placeholder rates and keeps shipments in memory.

    Every request gets the same two options, 10.00 each (5.00 base, 2.00
    tax), delivered five days from today.
    """

    def __init__(self, currency: str = "USD"):
        self.currency = currency
        self._lock = threading.Lock()
        self._numbers = itertools.count(123456789)
        self._shipments: dict[str, TrackingInfo] = {}

    def get_rates(self, requests: List[ShippingRateRequest]) -> List[ShippingRate]:
        eta = date.today() + timedelta(days=5)
        return [
            ShippingRate(
                carrier=carrier,
                service=service,
                total_rate=Decimal("10.00"),
                base_rate=Decimal("5.00"),
                tax=Decimal("2.00"),
                currency=self.currency,
                estimated_delivery=eta,
            )
            for carrier, service in PLACEHOLDER_RATES
        ]

    def create_shipment(self, requests: List[ShippingRateRequest]) -> Shipment:
        with self._lock:
            number = str(next(self._numbers))
            self._shipments[number] = TrackingInfo(number, "LABEL_CREATED", ["Label created"])
        return Shipment(tracking_number=number, label_urls=[f"https://labels.example.com/{number}.pdf"])

    def track(self, tracking_number: str) -> TrackingInfo:
        with self._lock:
            info = self._shipments.get(tracking_number)
        if info is None:
            raise NotFoundError(f"Shipment {tracking_number} not found.")
        return info

    def cancel(self, tracking_number: str) -> None:
        with self._lock:
            if self._shipments.pop(tracking_number, None) is None:
                raise NotFoundError(f"Shipment {tracking_number} not found.")


class PaymentsStub(PaymentsPort):
    """In-memory payment provider.

    Set ``decline_refunds`` to make every refund come back declined, the way
    the provider answers an unknown intent or an excessive amount.
    """

    def __init__(self, webhook_secret: str = "whsec_dev", webhook_tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.decline_refunds = False
        self.intents: dict[str, PaymentIntent] = {}
        self.sessions: dict[str, CheckoutSession] = {}
        self.refunds: List[Refund] = []
        self._ids = itertools.count(1)

    def create_payment_intent(self, amount: Decimal, currency: str, order_id: int) -> PaymentIntent:
        intent_id = f"pi_stub_{next(self._ids)}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=to_money(amount),
            currency=currency,
        )
        self.intents[intent_id] = intent
        return intent

    def create_checkout_session(
        self,
        items: List[CheckoutLine],
        currency: str,
        order_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        amount = sum((line.unit_amount * line.quantity for line in items), Decimal("0"))
        intent = self.create_payment_intent(amount, currency, order_id)
        session_id = f"cs_stub_{next(self._ids)}"
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.example.com/pay/{session_id}",
            payment_intent_id=intent.id,
        )
        self.sessions[session_id] = session
        return session

    def create_refund(self, payment_intent_id: str, amount: Decimal, order_id: int) -> Optional[Refund]:
        intent = self.intents.get(payment_intent_id)
        if self.decline_refunds or intent is None or to_money(amount) > intent.amount:
            return None
        refund = Refund(
            id=f"re_stub_{next(self._ids)}",
            payment_intent_id=payment_intent_id,
            amount=to_money(amount),
            status="succeeded",
        )
        self.refunds.append(refund)
        return refund

    def verify_webhook_signature(self, payload: bytes, signature_header: str) -> PaymentEvent:
        return construct_event(payload, signature_header, self.webhook_secret, self.webhook_tolerance)
