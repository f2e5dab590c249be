"""Repository layer for persisting orders.

This module maps domain ``Order`` objects to the Django ORM models and
back, so the orchestrator is not coupled to Django ORM details. Writes are
expected to run inside the caller's ``transaction.atomic`` block;
``get_for_update`` takes the row lock that serializes concurrent status
changes of the same order.
"""

from django.core.paginator import Paginator

from .domain import Address, HistoryEntry, Order, OrderItem, OrderStatus
from .models import OrderHistoryModel, OrderItemModel, OrderModel


def _address(data: dict | None) -> Address:
    data = data or {}
    return Address(
        street=data.get("street", ""),
        city=data.get("city", ""),
        state=data.get("state", ""),
        postal_code=data.get("postal_code", ""),
        country=data.get("country", ""),
    )


def to_domain(obj: OrderModel) -> Order:
    """Build a domain ``Order`` (with items and history) from its model."""
    return Order(
        id=obj.id,
        user_id=obj.user_id,
        status=OrderStatus(obj.status),
        shipping_address=_address(obj.shipping_address),
        billing_address=_address(obj.billing_address),
        currency=obj.currency,
        total_amount=obj.total_amount,
        items=[
            OrderItem(
                id=i.id,
                product_id=i.product_id,
                variant_id=i.variant_id,
                quantity=i.quantity,
                price_at_purchase=i.price_at_purchase,
            )
            for i in obj.items.all()
        ],
        history=[
            HistoryEntry(
                previous_status=OrderStatus(h.previous_status),
                new_status=OrderStatus(h.new_status),
                notes=h.notes,
                created_at=h.created_at,
            )
            for h in obj.history.all()
        ],
        order_date=obj.order_date,
        applied_coupon_code=obj.applied_coupon_code,
        payment_intent_id=obj.payment_intent_id,
        checkout_session_id=obj.checkout_session_id,
        email=obj.email,
    )


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM."""

    def add(self, order: Order) -> Order:
        """Persist a new order with its items and history.

        Args:
            order: Domain ``Order`` without an id.

        Returns:
            Order: The same order, reloaded with ids and timestamps.
        """
        obj = OrderModel.objects.create(
            user_id=order.user_id,
            status=order.status.value,
            shipping_address=order.shipping_address.as_dict(),
            billing_address=order.billing_address.as_dict(),
            currency=order.currency,
            total_amount=order.total_amount,
            applied_coupon_code=order.applied_coupon_code,
            payment_intent_id=order.payment_intent_id,
            checkout_session_id=order.checkout_session_id,
            email=order.email,
        )
        OrderItemModel.objects.bulk_create(
            [
                OrderItemModel(
                    order=obj,
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    price_at_purchase=i.price_at_purchase,
                )
                for i in order.items
            ]
        )
        for entry in order.history:
            self._write_history(obj.id, entry)
        return to_domain(OrderModel.objects.get(pk=obj.pk))

    def get(self, order_id: int) -> Order | None:
        obj = OrderModel.objects.filter(pk=order_id).prefetch_related("items", "history").first()
        return to_domain(obj) if obj else None

    def get_for_update(self, order_id: int) -> Order | None:
        obj = OrderModel.objects.select_for_update().filter(pk=order_id).first()
        return to_domain(obj) if obj else None

    def append_history(self, order: Order, entry: HistoryEntry) -> None:
        self._write_history(order.id, entry)

    def save(self, order: Order) -> None:
        """Persist the mutable fields of an existing order."""
        OrderModel.objects.filter(pk=order.id).update(
            status=order.status.value,
            payment_intent_id=order.payment_intent_id,
            checkout_session_id=order.checkout_session_id,
        )

    def list_page(self, page: int, page_size: int) -> tuple[list[Order], int]:
        qs = OrderModel.objects.prefetch_related("items", "history").order_by("-order_date", "-id")
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return [to_domain(o) for o in page_obj.object_list], p.count

    def list_by_user(self, user_id: int) -> list[Order]:
        qs = OrderModel.objects.filter(user_id=user_id).prefetch_related("items", "history")
        return [to_domain(o) for o in qs.order_by("-order_date", "-id")]

    def delete(self, order_id: int) -> bool:
        deleted, _ = OrderModel.objects.filter(pk=order_id).delete()
        return deleted > 0

    @staticmethod
    def _write_history(order_id: int, entry: HistoryEntry) -> None:
        OrderHistoryModel.objects.create(
            order_id=order_id,
            previous_status=OrderStatus(entry.previous_status).value,
            new_status=OrderStatus(entry.new_status).value,
            notes=entry.notes,
        )
