import logging

from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import ProductVariant

logger = logging.getLogger("catalog")


@receiver(post_save, sender=ProductVariant)
def create_inventory_for_new_variant(sender, instance: ProductVariant, created: bool, **kwargs):
    """Every new variant gets its inventory record, seeded with ``quantity``.

    The ledger is only called once the variant row is committed, so a rolled
    back variant never leaves a record behind.
    """
    if not created:
        return
    variant_id, quantity = instance.id, instance.quantity

    def seed():
        from apps.orders import providers

        providers.get_inventory().create_inventory_for_variant(variant_id, quantity)
        logger.info("inventory created", extra={"variant_id": variant_id, "quantity": quantity})

    transaction.on_commit(seed)
