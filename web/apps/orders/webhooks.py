"""Verification of signed payment-provider webhooks.

The provider signs the raw request body and sends
``Payments-Signature: t=<unix ts>,v1=<hex>`` where ``<hex>`` is
HMAC-SHA256(secret, ``"<t>." + body``). A body is accepted only when one of
its ``v1`` signatures matches and the timestamp is within the tolerance.
"""

import hashlib
import hmac
import json
import time

from .domain import PaymentEvent
from .errors import BadRequestError

SIGNATURE_HEADER = "Payments-Signature"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Payments-Signature`` header value for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise BadRequestError("Malformed webhook signature timestamp.", reason="INVALID_SIGNATURE") from None
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise BadRequestError("Malformed webhook signature header.", reason="INVALID_SIGNATURE")
    return timestamp, signatures


def construct_event(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> PaymentEvent:
    """Verify ``payload`` against ``header`` and parse it into a ``PaymentEvent``.

    Args:
        payload: Raw request body, exactly as received.
        header: ``Payments-Signature`` header value.
        secret: Shared webhook secret.
        tolerance: Maximum accepted age of the signature, in seconds.
        now: Current unix time; defaults to ``time.time()``.

    Raises:
        BadRequestError: Missing, malformed, mismatched or expired signature,
            or a body that is not a provider event.
    """
    if not header:
        raise BadRequestError("Missing webhook signature.", reason="INVALID_SIGNATURE")
    timestamp, signatures = _parse_header(header)

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise BadRequestError("Webhook signature does not match.", reason="INVALID_SIGNATURE")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise BadRequestError("Webhook signature has expired.", reason="INVALID_SIGNATURE")

    try:
        data = json.loads(payload.decode("utf-8"))
        event_type = data["type"]
        obj = data["data"]["object"]
    except (UnicodeDecodeError, ValueError, KeyError, TypeError):
        raise BadRequestError("Webhook body is not a valid event.", reason="INVALID_EVENT") from None
    if not isinstance(obj, dict):
        raise BadRequestError("Webhook body is not a valid event.", reason="INVALID_EVENT")

    if obj.get("object") == "payment_intent":
        intent_id = obj.get("id")
    else:
        intent_id = obj.get("payment_intent")
    return PaymentEvent(
        type=event_type,
        object_id=str(obj.get("id", "")),
        metadata=dict(obj.get("metadata") or {}),
        payment_intent_id=intent_id,
    )
