import os

import pytest
from sqlalchemy import create_engine

# keep the module-level engine off the production database
os.environ.setdefault("INVENTORY_DATABASE_URL", "sqlite://")

from services.inventory.ledger import InventoryLedger  # noqa: E402
from services.inventory.repo import InventoryRepo, init_db  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'inventory.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def repo(engine):
    return InventoryRepo(engine)


@pytest.fixture
def ledger(repo):
    return InventoryLedger(repo, backoff_secs=0)
