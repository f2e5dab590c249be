"""Signed webhook delivery to the orders API.

Events are posted as JSON with a ``Payments-Signature`` header of the form
``t=<unix ts>,v1=<hex>``, where the hex digest is HMAC-SHA256 over
``"<t>." + body`` keyed with the shared webhook secret.
"""

import hashlib
import hmac
import json
import logging
import os
import time

import httpx

from .repo import new_id

logger = logging.getLogger("payments.webhooks")

SIGNATURE_HEADER = "Payments-Signature"
WEBHOOK_URL = os.getenv("PAYMENTS_WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("PAYMENTS_WEBHOOK_SECRET", "whsec_dev")
WEBHOOK_TIMEOUT_SECS = float(os.getenv("PAYMENTS_WEBHOOK_TIMEOUT_SECS", "3.0"))


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def build_event(event_type: str, obj: dict) -> dict:
    return {
        "id": new_id("evt"),
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def dispatch(event: dict, url: str | None = None, secret: str | None = None) -> bool:
    """POST ``event`` to the orders API.

    Delivery is best-effort: the provider-side state change has already been
    committed, so a failed delivery is logged and reported to the caller
    instead of raised.

    Returns:
        bool: True when the receiver answered with a 2xx status.
    """
    target = url if url is not None else WEBHOOK_URL
    if not target:
        logger.info("webhook delivery disabled", extra={"event_type": event["type"]})
        return False
    body = json.dumps(event, separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(body, secret or WEBHOOK_SECRET),
    }
    try:
        with httpx.Client(timeout=WEBHOOK_TIMEOUT_SECS) as client:
            resp = client.post(target, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("webhook delivery failed", extra={"event_type": event["type"], "error": str(exc)})
        return False
    if resp.status_code >= 300:
        logger.warning(
            "webhook rejected",
            extra={"event_type": event["type"], "status_code": resp.status_code},
        )
        return False
    logger.info("webhook delivered", extra={"event_type": event["type"], "event_id": event["id"]})
    return True
