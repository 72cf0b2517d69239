import pytest
from fastapi.testclient import TestClient

from api_server import app, get_store
from sales_db import SalesStoreError


class BrokenStore:
    backend = "sqlite"

    def read_df(self, sql, params=()):
        raise SalesStoreError("database is locked")

    def execute(self, sql, params=()):
        raise SalesStoreError("database is locked")


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def broken_client():
    app.dependency_overrides[get_store] = lambda: BrokenStore()
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert client.get("/api/health/db").json() == {"ok": True, "db_backend": "sqlite"}


def test_suggestions_scenario(client, add_sales):
    add_sales(
        [
            ("A1", "Kafa", 20, 10.0, "01.11.2024"),
            ("A1", "Kafa", 10, 10.0, "05.11.2023"),
            ("B2", "Caj", 1, 3.0, "29.10.2024"),
        ]
    )

    resp = client.get("/api/suggestions", params={"date": "29.10.2025", "days": 10, "years": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["count"] == 2
    assert body["years_with_data"] == 2
    assert body["prediction_start_date"] == "2025-10-29"
    assert body["prediction_end_date"] == "2025-11-07"
    assert body["windows_sampled"] == [
        {"year": "2024", "start_date": "2024-10-29", "end_date": "2024-11-07", "has_data": True},
        {"year": "2023", "start_date": "2023-10-29", "end_date": "2023-11-07", "has_data": True},
    ]
    top = body["forecasts"][0]
    assert top["product_code"] == "A1"
    assert top["suggested_order_quantity"] == 15
    assert top["avg_daily_quantity"] == pytest.approx(1.5)
    assert top["confidence"] == "medium"
    assert [y["year"] for y in top["yearly_breakdown"]] == ["2024", "2023"]


def test_suggestions_without_data(client):
    body = client.get("/api/suggestions", params={"date": "2025-10-29"}).json()
    assert body["forecasts"] == []
    assert body["years_with_data"] == 0
    assert len(body["windows_sampled"]) == 4
    assert all(w["has_data"] is False for w in body["windows_sampled"])


@pytest.mark.parametrize(
    "params",
    [
        {"days": 0},
        {"years": -1},
        {"date": "32.13.2025"},
        {"date": "29.10.2025", "years": 2025},
        {"date": "29.10.2025", "years": 5000},
        {"date": "29.10.2025", "days": 10**9},
    ],
)
def test_suggestions_reject_bad_parameters(client, params):
    resp = client.get("/api/suggestions", params=params)
    assert resp.status_code == 400
    assert resp.json()["detail"]["success"] is False


def test_storage_failure_is_server_error(broken_client):
    resp = broken_client.get("/api/suggestions", params={"date": "29.10.2025"})
    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["error"] == "Failed to generate suggestions"
    assert "locked" in detail["message"]


def test_top_items_requires_date(client, add_sales):
    add_sales([("A1", "Kafa", 2, 1.0, "15.01.2024")])
    assert client.get("/api/top-items").status_code == 400

    body = client.get("/api/top-items", params={"date": "15.01.2024"}).json()
    assert body["count"] == 1
    assert body["date"] == "2024-01-15"


def test_sales_trends_and_analytics_routes(client, add_sales):
    add_sales([("A1", "Kafa", 2, 1.0, "15.01.2024"), ("A1", "Kafa", 1, 1.0, "15.01.2023")])

    assert client.get("/api/sales-trends", params={"period": "hourly"}).status_code == 400
    trends = client.get("/api/sales-trends", params={"period": "yearly"}).json()
    assert [r["period"] for r in trends["data"]] == ["2023", "2024"]

    overview = client.get("/api/product-analytics").json()
    assert overview["type"] == "overview"
    assert overview["data"]["total_transactions"] == 2

    missing = client.get("/api/product-analytics", params={"type": "product-seasonality", "product_code": "ZZ"})
    assert missing.status_code == 404


def test_import_then_list_history(client):
    content = b"sifra_art,naziv_art,kolicina,cena,datum\nA1,Kafa,3,2.0,10.10.2024\nA2,Caj,1,1.0,bad\n"
    resp = client.post("/api/import/sales", files={"file": ("oktobar.csv", content, "text/csv")})

    assert resp.status_code == 200
    body = resp.json()
    assert body["rows_imported"] == 1
    assert body["rows_rejected"] == 1

    history = client.get("/api/import/history").json()["rows"]
    assert history[0]["source_file"] == "oktobar.csv"
    sales = client.get("/api/sales").json()
    assert sales["data"][0]["sale_date"] == "2024-10-10"


def test_import_rejects_unsupported_file(client):
    resp = client.post("/api/import/sales", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert resp.status_code == 400
