"""Idempotency-Key handling for order creation.

A client retrying ``POST /api/orders/`` with the same ``Idempotency-Key``
must not place a second order. The first request claims the key together
with a hash of its body; once processed, the response (status and body) is
stored on the key so retries replay it. Reusing a key with another body is a
conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


class IdempotencyConflict(Exception):
    """The key was already used for a different request body."""


def canonical_hash(payload: dict) -> str:
    """SHA-256 of the payload serialized with sorted keys and compact separators."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def claim(key: str, payload: dict) -> tuple[bool, IdempotencyKey]:
    """Claim ``key`` for ``payload``, or return the record that already holds it.

    The create path runs in a nested savepoint so an ``IntegrityError`` from a
    concurrent claim only rolls back that block; the existing record is then
    read under a row lock.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when this call created the record and the caller must
        ``finalize`` it.

    Raises:
        IdempotencyConflict: The key exists with a different payload hash.
    """
    h = canonical_hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the response of the request that claimed ``rec``."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])
