"""API tests against a throwaway SQLite database.

The application lifespan (database init, scheduler) is not started; every
database call goes through a NullPool engine so connections never outlive
the TestClient's event loop.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from sku_studio.api.deps import get_order_service, get_repository
from sku_studio.db.models import Base
from sku_studio.db.repository import OrderRepository
from sku_studio.main import app
from sku_studio.worker.job_runner import JobResult
from sku_studio.worker.order_service import OrderService


class RecordingRunner:
    def __init__(self):
        self.calls = []

    async def run_scrape_job(self, order_id, identifiers, on_progress=None):
        self.calls.append((order_id, list(identifiers)))
        return JobResult(order_id=order_id, status="processing")


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def client(tmp_path, runner):
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    repository = OrderRepository(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_order_service] = lambda: OrderService(
        repository, runner=runner, price=Decimal("10.00")
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _user(client, balance="25.00", email="buyer@example.com"):
    response = client.post("/api/users", json={"email": email, "balance": balance})
    assert response.status_code == 201
    return response.json()["user_id"]


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_parse_quotes_cost(client):
    response = client.post("/api/orders/parse", json={"text": "3348901250153\n3348901250153, 12345678"})

    body = response.json()
    assert body["identifiers"] == ["3348901250153", "12345678"]
    assert Decimal(body["total_cost"]) == Decimal("20.00")


def test_create_order_charges_and_starts_job(client, runner):
    user_id = _user(client)

    response = client.post(
        "/api/orders",
        json={"user_id": user_id, "identifiers": ["111111111111", "222222222222", "333333333333"]},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["identifiers_to_process"] == 2
    assert body["identifiers_skipped"] == 1
    assert body["is_partial"] is True
    assert Decimal(body["charged_amount"]) == Decimal("20.00")
    assert runner.calls == [(body["order_id"], ["111111111111", "222222222222"])]

    balance = client.get(f"/api/users/{user_id}/balance").json()
    assert Decimal(balance["balance"]) == Decimal("5.00")

    order = client.get(f"/api/orders/{body['order_id']}").json()
    assert order["status"] == "processing"
    assert order["total_items"] == 3
    assert [item["status"] for item in order["items"]] == ["pending", "pending", "skipped"]


def test_create_order_errors(client):
    user_id = _user(client, balance="5.00")

    short = client.post("/api/orders", json={"user_id": user_id, "identifiers": ["111111111111"]})
    assert short.status_code == 400
    assert "Insufficient balance" in short.json()["detail"]

    assert client.post("/api/orders", json={"user_id": 999, "identifiers": ["111111111111"]}).status_code == 404
    assert client.post("/api/orders", json={"user_id": user_id, "identifiers": []}).status_code == 422


def test_retry_conflicts_while_processing(client):
    user_id = _user(client)
    order_id = client.post("/api/orders", json={"user_id": user_id, "identifiers": ["111111111111"]}).json()[
        "order_id"
    ]

    assert client.post(f"/api/orders/{order_id}/retry").status_code == 409
    assert client.post("/api/orders/999/retry").status_code == 404
    assert client.get("/api/orders/999").status_code == 404


def test_users_top_up_and_duplicates(client):
    user_id = _user(client, balance="0")

    response = client.post(f"/api/users/{user_id}/top-up", json={"amount": "15.50"})
    assert Decimal(response.json()["balance"]) == Decimal("15.50")

    assert client.post("/api/users/999/top-up", json={"amount": "1"}).status_code == 404
    assert client.post(f"/api/users/{user_id}/top-up", json={"amount": "0"}).status_code == 422
    assert client.post("/api/users", json={"email": "buyer@example.com"}).status_code == 409


def test_list_stores(client):
    stores = client.get("/api/stores").json()["stores"]
    assert stores[0]["name"] == "Jomashop"
    assert all(store["base_url"].startswith("https://") for store in stores)
