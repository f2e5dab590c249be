from decimal import Decimal

from django.db import models


class Product(models.Model):
    class HostedAt(models.TextChoices):
        STORE = "STORE"
        WAREHOUSE = "WAREHOUSE"

    name = models.CharField(max_length=200)
    price = models.DecimalField(max_digits=12, decimal_places=2)

    # kg / cm, used for shipping quotes
    weight = models.DecimalField(max_digits=8, decimal_places=3, default=Decimal("0"))
    width = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0"))
    height = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0"))
    length = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal("0"))

    hosted_at = models.CharField(max_length=16, choices=HostedAt.choices, default=HostedAt.WAREHOUSE)
    seller_postal_code = models.CharField(max_length=16, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = "catalog"
        db_table = "products"


class ProductVariant(models.Model):
    product = models.ForeignKey(Product, related_name="variants", on_delete=models.CASCADE)
    sku = models.CharField(max_length=64, unique=True)
    price_adjustment = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))
    # initial stock handed to the inventory service when the variant is created
    quantity = models.PositiveIntegerField(default=0)

    class Meta:
        app_label = "catalog"
        db_table = "product_variants"


class Cart(models.Model):
    user_id = models.BigIntegerField(unique=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = "catalog"
        db_table = "carts"

    @property
    def total_price(self) -> Decimal:
        total = Decimal("0")
        for item in self.items.select_related("product", "variant"):
            unit = item.product.price + (item.variant.price_adjustment if item.variant else Decimal("0"))
            total += unit * item.quantity
        return total


class CartItem(models.Model):
    cart = models.ForeignKey(Cart, related_name="items", on_delete=models.CASCADE)
    product = models.ForeignKey(Product, on_delete=models.CASCADE)
    variant = models.ForeignKey(ProductVariant, null=True, blank=True, on_delete=models.CASCADE)
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        app_label = "catalog"
        db_table = "cart_items"
