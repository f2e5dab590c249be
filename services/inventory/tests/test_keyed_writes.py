import pytest
from fastapi.testclient import TestClient

from services.inventory.main import app, get_ledger
from services.inventory.repo import InventoryRepo


def stock(repo: InventoryRepo, variant_id: int = 1) -> tuple[int, int]:
    record = repo.get(variant_id)
    return record.quantity_on_hand, record.reserved_quantity


def test_reservation_resent_with_same_key_is_applied_once(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)

    ledger.reserve_stock(1, 3, key="r-1")
    replay = ledger.reserve_stock(1, 3, key="r-1")

    assert (replay.quantity_on_hand, replay.reserved_quantity) == (7, 3)
    assert stock(repo) == (7, 3)


def test_distinct_keys_are_distinct_writes(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)

    ledger.reserve_stock(1, 3, key="r-1")
    ledger.reserve_stock(1, 3, key="r-2")

    assert stock(repo) == (4, 6)


def test_commit_and_release_resent_with_same_key(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)
    ledger.reserve_stock(1, 4, key="r-1")
    ledger.reserve_stock(1, 2, key="r-2")

    ledger.commit_reservation(1, 4, key="c-1", reservation_key="r-1")
    ledger.commit_reservation(1, 4, key="c-1", reservation_key="r-1")
    ledger.release_stock(1, 2, key="x-2", reservation_key="r-2")
    ledger.release_stock(1, 2, key="x-2", reservation_key="r-2")

    assert stock(repo) == (6, 0)


def test_release_of_reservation_that_never_landed_voids_it(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)

    assert ledger.release_stock(1, 3, key="x-1", reservation_key="r-1") is None
    assert stock(repo) == (10, 0)

    # a late copy of the voided reservation does not hold anything
    ledger.reserve_stock(1, 3, key="r-1")
    assert stock(repo) == (10, 0)


def test_release_after_commit_does_nothing(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)
    ledger.reserve_stock(1, 3, key="r-1")
    ledger.commit_reservation(1, 3, key="c-1", reservation_key="r-1")

    assert ledger.release_stock(1, 3, key="x-1", reservation_key="r-1") is None
    assert stock(repo) == (7, 0)


def test_restock_requires_the_commit_to_have_landed(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)
    ledger.reserve_stock(1, 3, key="r-1")

    ledger.update_quantity(1, 3, "ADD", key="a-1", requires="c-1")
    assert stock(repo) == (7, 3)

    # the voided commit is ignored if it shows up late
    ledger.commit_reservation(1, 3, key="c-1", reservation_key="r-1")
    assert stock(repo) == (7, 3)

    ledger.release_stock(1, 3, key="x-1", reservation_key="r-1")
    assert stock(repo) == (10, 0)


def test_restock_after_landed_commit(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)
    ledger.reserve_stock(1, 3, key="r-1")
    ledger.commit_reservation(1, 3, key="c-1", reservation_key="r-1")

    ledger.update_quantity(1, 3, "ADD", key="a-1", requires="c-1")
    ledger.update_quantity(1, 3, "ADD", key="a-1", requires="c-1")

    assert stock(repo) == (10, 0)


def test_unkeyed_writes_keep_applying(ledger, repo):
    ledger.create_inventory_for_variant(1, 10)

    ledger.reserve_stock(1, 2)
    ledger.reserve_stock(1, 2)

    assert stock(repo) == (6, 4)


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_idempotency_key_header_dedupes_reservations(client, repo):
    client.post("/inventory", json={"variant_id": 1, "initial_quantity": 10})
    headers = {"Idempotency-Key": "order-attempt-x-0-reserve"}

    first = client.post("/inventory/1/reserve", json={"quantity": 3}, headers=headers)
    second = client.post("/inventory/1/reserve", json={"quantity": 3}, headers=headers)

    assert first.status_code == second.status_code == 200
    assert second.json()["reserved_quantity"] == 3
    assert stock(repo) == (7, 3)


def test_release_endpoint_reports_skipped_release(client):
    client.post("/inventory", json={"variant_id": 1, "initial_quantity": 10})

    r = client.post(
        "/inventory/1/release",
        json={"quantity": 3, "reservation_key": "never-sent"},
        headers={"Idempotency-Key": "x-1"},
    )

    assert r.json() == {"released": False, "variant_id": 1}


def test_adjust_endpoint_honours_requires(client, repo):
    client.post("/inventory", json={"variant_id": 1, "initial_quantity": 10})

    r = client.post("/inventory/1/adjust", json={"quantity": 5, "operator": "ADD", "requires": "c-missing"})

    assert r.status_code == 200
    assert stock(repo) == (10, 0)
