from django.db import models


class OrderModel(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        PAID = "PAID"
        PROCESSING = "PROCESSING"
        SHIPPED = "SHIPPED"
        DELIVERED = "DELIVERED"
        CANCELLED = "CANCELLED"

    user_id = models.BigIntegerField(db_index=True)
    order_date = models.DateTimeField(auto_now_add=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)

    # {street, city, state, postal_code, country}
    shipping_address = models.JSONField(default=dict)
    billing_address = models.JSONField(default=dict)

    currency = models.CharField(max_length=3, default="USD")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    applied_coupon_code = models.CharField(max_length=64, null=True, blank=True)
    payment_intent_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    checkout_session_id = models.CharField(max_length=64, null=True, blank=True)
    email = models.EmailField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = "orders"
        db_table = "orders"
        ordering = ["-order_date", "-id"]


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.CASCADE)
    product_id = models.BigIntegerField()
    variant_id = models.BigIntegerField()
    quantity = models.PositiveIntegerField()
    price_at_purchase = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        app_label = "orders"
        db_table = "order_items"
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="order_item_quantity_positive"),
        ]


class OrderHistoryModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="history", on_delete=models.CASCADE)
    previous_status = models.CharField(max_length=16, choices=OrderModel.Status.choices)
    new_status = models.CharField(max_length=16, choices=OrderModel.Status.choices)
    notes = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = "orders"
        db_table = "order_history"
        ordering = ["created_at", "id"]

    def save(self, *args, **kwargs):
        # append-only
        if self.pk is not None and not self._state.adding:
            raise ValueError("ORDER_HISTORY_IS_APPEND_ONLY")
        super().save(*args, **kwargs)


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = "orders"
        db_table = "orders_idempotency_keys"
