import pytest
from fastapi.testclient import TestClient

from services.inventory.main import app, get_ledger


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_create_and_read(client):
    r = client.post("/inventory", json={"variant_id": 7, "initial_quantity": 10, "reorder_threshold": 2})
    assert r.status_code == 201
    assert r.json()["quantity_on_hand"] == 10

    r = client.get("/inventory/7")
    assert r.status_code == 200
    assert r.json()["version"] == 1


def test_create_duplicate_returns_409(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 1})
    r = client.post("/inventory", json={"variant_id": 7, "initial_quantity": 1})
    assert r.status_code == 409
    assert r.json()["detail"] == "INVENTORY_EXISTS"


def test_unknown_record_returns_404(client):
    r = client.get("/inventory/99")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


def test_reserve_commit_flow(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 10})

    r = client.post("/inventory/7/reserve", json={"quantity": 4})
    assert r.status_code == 200
    assert (r.json()["quantity_on_hand"], r.json()["reserved_quantity"]) == (6, 4)

    r = client.post("/inventory/7/commit", json={"quantity": 4})
    assert (r.json()["quantity_on_hand"], r.json()["reserved_quantity"]) == (6, 0)


def test_reserve_out_of_stock_returns_409(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 1})
    r = client.post("/inventory/7/reserve", json={"quantity": 2})
    assert r.status_code == 409
    assert r.json()["detail"] == "OUT_OF_STOCK"


def test_release(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 3})
    client.post("/inventory/7/reserve", json={"quantity": 3})

    r = client.post("/inventory/7/release", json={"quantity": 3})
    assert r.json()["released"] is True
    assert r.json()["quantity_on_hand"] == 3

    r = client.post("/inventory/99/release", json={"quantity": 1})
    assert r.status_code == 200
    assert r.json() == {"released": False, "variant_id": 99}


def test_adjust(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 3})
    r = client.post("/inventory/7/adjust", json={"quantity": 2, "operator": "ADD"})
    assert r.json()["quantity_on_hand"] == 5

    r = client.post("/inventory/7/adjust", json={"quantity": 9, "operator": "SUBTRACT"})
    assert r.status_code == 409


def test_availability(client):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 3})
    assert client.get("/inventory/7/availability", params={"quantity": 3}).json()["in_stock"] is True
    assert client.get("/inventory/7/availability", params={"quantity": 4}).json()["in_stock"] is False
    assert client.get("/inventory/7/availability", params={"quantity": 0}).status_code == 422


@pytest.mark.parametrize("body", [{"quantity": 0}, {"quantity": -1}, {}])
def test_invalid_quantity_is_rejected(client, body):
    client.post("/inventory", json={"variant_id": 7, "initial_quantity": 3})
    assert client.post("/inventory/7/reserve", json=body).status_code == 422


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc"})
    assert r.headers["X-Request-ID"] == "abc"
