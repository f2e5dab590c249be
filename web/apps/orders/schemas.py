"""Pydantic schemas for orders.

Request schemas validate and normalize incoming payloads before they are
turned into domain commands; read schemas shape domain objects into JSON
responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .domain import Address, CreateOrderCommand, LineItem, Order, OrderPreview, OrderStatus

CURRENCIES = {"EUR", "USD", "GBP"}


def _currency(v: str) -> str:
    v2 = v.upper()
    if v2 not in CURRENCIES:
        raise ValueError("Unsupported currency")
    return v2


class AddressIn(BaseModel):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(default="", max_length=100)
    postal_code: str = Field(min_length=1, max_length=16)
    country: str = Field(min_length=2, max_length=2)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return v.upper()

    def to_domain(self) -> Address:
        return Address(**self.model_dump())


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Catalog product identifier.
        variant_id: Variant of that product.
        quantity: Positive integer indicating units requested.
        price_at_purchase: Unit price shown to the customer.
    """

    product_id: int = Field(gt=0)
    variant_id: int = Field(gt=0)
    quantity: int = Field(gt=0)
    price_at_purchase: Decimal = Field(ge=0, max_digits=12, decimal_places=2)

    def to_domain(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            variant_id=self.variant_id,
            quantity=self.quantity,
            price_at_purchase=self.price_at_purchase,
        )


class PreviewOrderDTO(BaseModel):
    shipping_address: AddressIn
    items: list[OrderItemIn] = Field(min_length=1)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _currency(v)


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        user_id: Customer placing the order; their cart is checked out.
        shipping_address: Where the order ships to.
        billing_address: Defaults to the shipping address.
        items: At least one `OrderItemIn`.
        currency: 3-letter ISO currency code. Normalized to uppercase and
            validated against a small supported set.
        shipping_carrier: Carrier of the selected rate, e.g. ``DHL``.
        shipping_service: Service of the selected rate, e.g. ``Ground``.
            May be omitted when the carrier offers a single service.
        coupon_code: Coupon applied to the cart, recorded on the order.
        email: Contact address for order notifications.
    """

    user_id: int = Field(gt=0)
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    items: list[OrderItemIn] = Field(min_length=1)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    shipping_carrier: str = Field(min_length=1, max_length=50)
    shipping_service: Optional[str] = Field(default=None, max_length=100)
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    email: Optional[EmailStr] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate and normalize currency code.

        Raises:
            ValueError: When the currency is not in the supported set.
        """
        return _currency(v)

    def to_command(self) -> CreateOrderCommand:
        shipping = self.shipping_address.to_domain()
        return CreateOrderCommand(
            user_id=self.user_id,
            shipping_address=shipping,
            billing_address=self.billing_address.to_domain() if self.billing_address else shipping,
            items=[i.to_domain() for i in self.items],
            shipping_carrier=self.shipping_carrier,
            shipping_service=self.shipping_service,
            currency=self.currency,
            coupon_code=self.coupon_code,
            email=self.email,
        )


class StatusUpdateDTO(BaseModel):
    new_status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("new_status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.upper() if isinstance(v, str) else v


class CheckoutSessionDTO(BaseModel):
    success_url: Optional[str] = Field(default=None, max_length=500)
    cancel_url: Optional[str] = Field(default=None, max_length=500)


# ---- Read schemas ----
class AddressOut(BaseModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str


class OrderItemOut(BaseModel):
    product_id: int
    variant_id: int
    quantity: int
    price_at_purchase: Decimal


class HistoryOut(BaseModel):
    previous_status: OrderStatus
    new_status: OrderStatus
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderReadDTO(BaseModel):
    id: int
    user_id: int
    status: OrderStatus
    order_date: Optional[datetime] = None
    currency: str
    total_amount: Decimal
    shipping_address: AddressOut
    billing_address: AddressOut
    applied_coupon_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    email: Optional[str] = None
    items: list[OrderItemOut]
    history: list[HistoryOut]

    @classmethod
    def of(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status,
            order_date=order.order_date,
            currency=order.currency,
            total_amount=order.total_amount,
            shipping_address=AddressOut(**order.shipping_address.as_dict()),
            billing_address=AddressOut(**order.billing_address.as_dict()),
            applied_coupon_code=order.applied_coupon_code,
            payment_intent_id=order.payment_intent_id,
            checkout_session_id=order.checkout_session_id,
            email=order.email,
            items=[
                OrderItemOut(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    price_at_purchase=i.price_at_purchase,
                )
                for i in order.items
            ],
            history=[
                HistoryOut(
                    previous_status=h.previous_status,
                    new_status=h.new_status,
                    notes=h.notes,
                    created_at=h.created_at,
                )
                for h in order.history
            ],
        )


class ShippingRateOut(BaseModel):
    carrier: str
    service: str
    total_rate: Decimal
    base_rate: Decimal
    tax: Decimal
    currency: str
    estimated_delivery: date


class OrderPreviewOut(BaseModel):
    items: list[OrderItemOut]
    currency: str
    total_amount: Decimal
    available_shipping_rates: list[ShippingRateOut]

    @classmethod
    def of(cls, preview: OrderPreview) -> "OrderPreviewOut":
        return cls(
            items=[
                OrderItemOut(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    price_at_purchase=i.price_at_purchase,
                )
                for i in preview.items
            ],
            currency=preview.currency,
            total_amount=preview.total_amount,
            available_shipping_rates=[
                ShippingRateOut(
                    carrier=r.carrier,
                    service=r.service,
                    total_rate=r.total_rate,
                    base_rate=r.base_rate,
                    tax=r.tax,
                    currency=r.currency,
                    estimated_delivery=r.estimated_delivery,
                )
                for r in preview.available_shipping_rates
            ],
        )
