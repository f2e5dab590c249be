"""API tests for payment setup and the signed payment webhook."""
import pytest

from apps.orders.models import OrderModel

CREATE_URL = "/api/orders/"
WEBHOOK_URL = "/api/payments/webhook/"


@pytest.fixture
def order_id(client, cart, order_payload):
    r = client.post(CREATE_URL, data=order_payload, content_type="application/json")
    assert r.status_code == 201
    return r.json()["id"]


@pytest.mark.django_db
def test_payment_intent_is_created_for_pending_order(client, order_id, payments):
    r = client.post(f"/api/orders/{order_id}/payment-intent/")

    assert r.status_code == 201
    body = r.json()
    assert body["order_id"] == order_id
    assert body["client_secret"].startswith(body["payment_intent_id"])
    assert str(payments.intents[body["payment_intent_id"]].amount) == "110.00"
    assert OrderModel.objects.get(pk=order_id).payment_intent_id == body["payment_intent_id"]


@pytest.mark.django_db
def test_payment_intent_for_unknown_order(client):
    r = client.post("/api/orders/999999/payment-intent/")
    assert r.status_code == 404


@pytest.mark.django_db
def test_checkout_session_uses_default_return_urls(client, order_id, payments):
    r = client.post(f"/api/orders/{order_id}/checkout-session/", data={}, content_type="application/json")

    assert r.status_code == 201
    body = r.json()
    assert body["url"].endswith(body["session_id"])
    order = OrderModel.objects.get(pk=order_id)
    assert order.checkout_session_id == body["session_id"]
    assert order.payment_intent_id == payments.sessions[body["session_id"]].payment_intent_id


@pytest.mark.django_db
def test_checkout_session_for_cancelled_order(client, order_id):
    client.post(f"/api/orders/{order_id}/cancel/")
    r = client.post(f"/api/orders/{order_id}/checkout-session/", data={}, content_type="application/json")

    assert r.status_code == 400
    assert r.json()["reason"] == "ORDER_NOT_PENDING"


@pytest.mark.django_db
def test_webhook_marks_order_paid(client, order_id, signed_event):
    body, headers = signed_event("payment_intent.succeeded", order_id)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    assert r.status_code == 200
    assert r.json() == {"received": True, "type": "payment_intent.succeeded", "order_id": order_id, "status": "PAID"}
    order = OrderModel.objects.get(pk=order_id)
    assert order.status == "PAID"
    assert order.payment_intent_id == "pi_test_1"


@pytest.mark.django_db
def test_webhook_checkout_completed_marks_order_paid(client, order_id, signed_event):
    body, headers = signed_event("checkout.session.completed", order_id, object_type="checkout.session")
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    assert r.status_code == 200
    assert OrderModel.objects.get(pk=order_id).status == "PAID"


@pytest.mark.django_db
def test_webhook_duplicate_delivery_is_harmless(client, order_id, signed_event):
    body, headers = signed_event("payment_intent.succeeded", order_id)
    client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    assert r.status_code == 200
    assert OrderModel.objects.get(pk=order_id).history.count() == 2


@pytest.mark.django_db
def test_webhook_rejects_bad_signature(client, order_id, signed_event):
    body, _ = signed_event("payment_intent.succeeded", order_id)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", HTTP_PAYMENTS_SIGNATURE="t=1,v1=00")

    assert r.status_code == 400
    assert r.json()["reason"] == "INVALID_SIGNATURE"
    assert OrderModel.objects.get(pk=order_id).status == "PENDING"


@pytest.mark.django_db
def test_webhook_without_signature_header(client, order_id, signed_event):
    body, _ = signed_event("payment_intent.succeeded", order_id)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json")

    assert r.status_code == 400
    assert r.json()["reason"] == "INVALID_SIGNATURE"


@pytest.mark.django_db
def test_webhook_for_unknown_order(client, signed_event):
    body, headers = signed_event("payment_intent.succeeded", 999999)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    assert r.status_code == 500
    assert r.json()["detail"] == "PAYMENT_FAILED"


@pytest.mark.django_db
def test_webhook_ignores_unrelated_events(client, signed_event):
    body, headers = signed_event("customer.created", None)
    r = client.post(WEBHOOK_URL, data=body, content_type="application/json", **headers)

    assert r.status_code == 200
    assert r.json() == {"received": True, "type": "customer.created"}
