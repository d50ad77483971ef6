import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def seed(client, tenant="acme"):
    headers = {"X-Tenant-Id": tenant}
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers)
    assert account.status_code == 201
    category = client.post(
        "/api/categories", json={"name": "Food", "type": "expense"}, headers=headers
    )
    assert category.status_code == 201
    other = client.post(
        "/api/categories", json={"name": "Transport", "type": "expense"}, headers=headers
    )
    return headers, account.json()["id"], category.json()["id"], other.json()["id"]


def create_expense(client, headers, account_id, category_id, amount, day):
    response = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "category_id": category_id,
            "amount": amount,
            "date": day,
            "type": "expense",
        },
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def test_transaction_writes_show_up_in_trends(client) -> None:
    headers, account_id, food_id, transport_id = seed(client)
    txn = create_expense(client, headers, account_id, food_id, "-50.00", "2025-01-15")

    trends = client.get("/api/trends?period_type=monthly", headers=headers).json()
    assert trends["count"] == 1
    item = trends["items"][0]
    assert item["period_start"] == "2025-01-01"
    assert item["total_amount"] == "-50.00"
    assert item["category_name"] == "Food"
    assert item["average_amount"] == "-50.00"

    response = client.patch(
        f"/api/transactions/{txn['id']}",
        json={"category_id": transport_id},
        headers=headers,
    )
    assert response.status_code == 200

    trends = client.get("/api/trends?period_type=weekly", headers=headers).json()
    assert [item["category_name"] for item in trends["items"]] == ["Transport"]


def test_date_change_is_rejected_with_400(client) -> None:
    headers, account_id, food_id, _ = seed(client)
    txn = create_expense(client, headers, account_id, food_id, "-5.00", "2025-01-15")

    response = client.patch(
        f"/api/transactions/{txn['id']}", json={"date": "2025-02-01"}, headers=headers
    )

    assert response.status_code == 400
    assert "not supported" in response.json()["detail"]


def test_unknown_transaction_is_404(client) -> None:
    headers, _, _, _ = seed(client)
    response = client.patch("/api/transactions/999", json={"amount": "1.00"}, headers=headers)
    assert response.status_code == 404
    assert client.delete("/api/transactions/999", headers=headers).status_code == 404


def test_totals_endpoint_validates_dimensions(client) -> None:
    headers, account_id, food_id, _ = seed(client)
    create_expense(client, headers, account_id, food_id, "-5.00", "2025-01-15")
    create_expense(client, headers, account_id, food_id, "-7.00", "2025-02-15")

    ok = client.get(
        "/api/trends/totals?group_by=category_name&period_type=quarterly", headers=headers
    )
    assert ok.status_code == 200
    assert ok.json()["items"] == [
        {"category_name": "Food", "total_amount": "-12.00", "transaction_count": 2}
    ]

    bad = client.get("/api/trends/totals?group_by=amount", headers=headers)
    assert bad.status_code == 400
    assert client.get("/api/trends?period_type=hourly", headers=headers).status_code == 400


def test_helper_trend_endpoints_require_a_range(client) -> None:
    headers, account_id, food_id, _ = seed(client)
    create_expense(client, headers, account_id, food_id, "-5.00", "2025-01-15")

    assert client.get("/api/trends/categories", headers=headers).status_code == 400
    response = client.get(
        "/api/trends/categories?start_date=2025-01-01&end_date=2025-03-31",
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["items"][0]["category_name"] == "Food"

    flows = client.get(
        "/api/trends/income-expense?range=custom&start=2025-01-01&end=2025-01-31",
        headers=headers,
    )
    assert flows.json()["items"][0]["transaction_type"] == "expense"


def test_cube_maintenance_endpoints(client) -> None:
    headers, account_id, food_id, _ = seed(client)
    create_expense(client, headers, account_id, food_id, "-5.00", "2025-01-15")

    status = client.get("/api/cube/status", headers=headers).json()
    assert status["total_records"] == 2
    assert status["populated"] is True

    cleared = client.post("/api/cube/clear", headers=headers).json()
    assert cleared == {"deleted": 2}

    audit = client.get(
        "/api/cube/audit?start_date=2025-01-01&end_date=2025-01-31", headers=headers
    ).json()
    assert audit["consistent"] is False

    populated = client.post(
        "/api/cube/populate",
        json={"start_date": "2025-01-01", "end_date": "2025-01-31"},
        headers=headers,
    ).json()
    assert populated["records_created"] == 2
    assert populated["periods_processed"] > 0

    rebuilt = client.post(
        "/api/cube/rebuild",
        json={"start_date": "2025-01-01", "end_date": "2025-01-31", "period_type": "weekly"},
        headers=headers,
    )
    assert rebuilt.status_code == 200
    assert rebuilt.json() == {"rows_written": 1}

    too_long = client.post(
        "/api/cube/rebuild",
        json={"start_date": "2020-01-01", "end_date": "2025-01-31"},
        headers=headers,
    )
    assert too_long.status_code == 400


def test_tenants_are_isolated(client) -> None:
    headers, account_id, food_id, _ = seed(client, "acme")
    create_expense(client, headers, account_id, food_id, "-5.00", "2025-01-15")
    seed(client, "globex")

    other = client.get("/api/trends", headers={"X-Tenant-Id": "globex"}).json()
    assert other["count"] == 0

    response = client.post(
        "/api/transactions",
        json={
            "account_id": account_id,
            "amount": "-1.00",
            "date": "2025-01-15",
            "type": "expense",
        },
        headers={"X-Tenant-Id": "globex"},
    )
    assert response.status_code == 400


def test_bulk_endpoints(client) -> None:
    headers, account_id, food_id, transport_id = seed(client)
    created = client.post(
        "/api/transactions/bulk",
        json=[
            {
                "account_id": account_id,
                "category_id": food_id,
                "amount": "-3.00",
                "date": f"2025-01-{day:02d}",
                "type": "expense",
            }
            for day in (2, 9, 16)
        ],
        headers=headers,
    )
    assert created.status_code == 201
    ids = [item["id"] for item in created.json()["items"]]

    updated = client.post(
        "/api/transactions/bulk-update",
        json={"transaction_ids": ids, "changes": {"category_id": transport_id}},
        headers=headers,
    )
    assert updated.json() == {"updated": 3}
    monthly = client.get("/api/trends?period_type=monthly", headers=headers).json()
    assert [item["category_name"] for item in monthly["items"]] == ["Transport"]
    assert monthly["items"][0]["transaction_count"] == 3

    deleted = client.post(
        "/api/transactions/bulk-delete", json={"transaction_ids": ids}, headers=headers
    )
    assert deleted.json() == {"deleted": 3}
    assert client.get("/api/trends", headers=headers).json()["count"] == 0
