import os

import pytest
from sqlalchemy import create_engine

os.environ.setdefault("PAYMENTS_DATABASE_URL", "sqlite://")

from services.payments.main import app, get_dispatcher, get_repo  # noqa: E402
from services.payments.repo import PaymentsRepo, init_db  # noqa: E402


@pytest.fixture
def repo(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'payments.db'}", connect_args={"check_same_thread": False})
    init_db(eng)
    yield PaymentsRepo(eng)
    eng.dispose()


@pytest.fixture
def sent():
    """Events handed to the webhook dispatcher during the test."""
    return []


@pytest.fixture
def client(repo, sent):
    from fastapi.testclient import TestClient

    def dispatch(event):
        sent.append(event)
        return True

    app.dependency_overrides[get_repo] = lambda: repo
    app.dependency_overrides[get_dispatcher] = lambda: dispatch
    yield TestClient(app)
    app.dependency_overrides.clear()
