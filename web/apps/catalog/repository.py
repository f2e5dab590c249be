"""Catalog and cart lookups for the order orchestrator.

These repositories implement ``CatalogPort`` and ``CartPort`` on top of the
catalog models and return the orders domain dataclasses, so the orchestrator
never sees ORM objects.
"""

from typing import Iterable

from apps.orders.domain import Cart, CartPort, CatalogPort, HostedAt, Product

from .models import Cart as CartModel
from .models import Product as ProductModel


class CatalogRepository(CatalogPort):
    def get_products(self, ids: Iterable[int]) -> dict[int, Product]:
        """Return the requested products keyed by id; unknown ids are absent."""
        qs = ProductModel.objects.filter(pk__in=list(ids)).prefetch_related("variants")
        return {
            p.id: Product(
                id=p.id,
                name=p.name,
                price=p.price,
                weight=p.weight,
                width=p.width,
                height=p.height,
                length=p.length,
                hosted_at=HostedAt(p.hosted_at),
                seller_postal_code=p.seller_postal_code,
                variant_ids=frozenset(v.id for v in p.variants.all()),
            )
            for p in qs
        }


class CartRepository(CartPort):
    def get_cart_by_user(self, user_id: int) -> Cart | None:
        cart = CartModel.objects.filter(user_id=user_id).first()
        if cart is None:
            return None
        return Cart(id=cart.id, user_id=cart.user_id, total_price=cart.total_price)

    def clear_cart(self, cart_id: int) -> None:
        """Remove every item of the cart; the cart itself is kept."""
        CartModel.objects.get(pk=cart_id).items.all().delete()
