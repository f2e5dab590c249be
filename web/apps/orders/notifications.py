"""Customer e-mail notifications sent through Django's mail API."""

import logging

from django.conf import settings
from django.core.mail import send_mail

from .domain import NotificationsPort, Order, OrderStatus

logger = logging.getLogger("orders.notifications")


class EmailNotifier(NotificationsPort):
    """Send order e-mails; orders without a contact address are skipped."""

    def __init__(self, from_email: str | None = None):
        self.from_email = from_email or settings.DEFAULT_FROM_EMAIL

    def send_order_confirmation(self, order: Order) -> None:
        lines = [f"- {i.quantity} x variant {i.variant_id} at {i.price_at_purchase} {order.currency}" for i in order.items]
        body = "\n".join(
            [
                f"Thank you for your order #{order.id}.",
                "",
                *lines,
                "",
                f"Total: {order.total_amount} {order.currency}",
            ]
        )
        self._send(order, f"Order #{order.id} confirmed", body)

    def send_shipping_update(self, order: Order, status: OrderStatus) -> None:
        status = OrderStatus(status)
        if status is OrderStatus.SHIPPED:
            body = f"Good news: order #{order.id} is on its way."
        else:
            body = f"Order #{order.id} has been {status.value.lower()}."
        self._send(order, f"Order #{order.id} {status.value.lower()}", body)

    def _send(self, order: Order, subject: str, body: str) -> None:
        if not order.email:
            logger.info("notification skipped, no email", extra={"order_id": order.id})
            return
        send_mail(subject, body, self.from_email, [order.email], fail_silently=False)
        logger.info("notification sent", extra={"order_id": order.id, "subject": subject})
