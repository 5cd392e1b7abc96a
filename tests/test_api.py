import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

import main
from database import Base, get_db
from main import app, integrity_error_handler


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
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
    yield TestClient(app)
    app.dependency_overrides.clear()
    engine.dispose()


def _auth(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/api/auth/register",
        json={"name": "Ana", "email": "ana@example.com", "password": "secret1"},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


def test_status_is_public(client) -> None:
    response = client.get("/status")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"


def test_protected_routes_require_a_token(client) -> None:
    response = client.get("/api/accounts")
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Access token is required"}


def test_unknown_route_uses_the_envelope(client) -> None:
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_transaction_flow_over_http(client) -> None:
    headers = _auth(client)
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "checking", "balance_cents": 150_000},
        headers=headers,
    ).json()["data"]
    category = client.post(
        "/api/categories",
        json={"name": "Food", "type": "expense"},
        headers=headers,
    ).json()["data"]

    created = client.post(
        "/api/transactions",
        json={
            "description": "Groceries",
            "amount_cents": 20_000,
            "type": "expense",
            "date": "2025-03-10",
            "is_paid": True,
            "category_id": category["id"],
            "account_id": account["id"],
        },
        headers=headers,
    )
    assert created.status_code == 201
    txn = created.json()["data"]
    assert txn["category"]["name"] == "Food"

    client.put(
        f"/api/transactions/{txn['id']}", json={"amount_cents": 5_000}, headers=headers
    )
    balance = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert balance["data"]["balance_cents"] == 145_000

    deleted = client.delete(f"/api/transactions/{txn['id']}", headers=headers)
    assert deleted.json() == {"success": True, "message": "Transaction deleted"}
    balance = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert balance["data"]["balance_cents"] == 150_000


def test_error_statuses(client) -> None:
    headers = _auth(client)

    missing = client.get("/api/goals/999", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "Goal not found"

    food = {"name": "Food", "type": "expense"}
    client.post("/api/categories", json=food, headers=headers)
    duplicate = client.post("/api/categories", json=food, headers=headers)
    assert duplicate.status_code == 409

    invalid = client.post(
        "/api/accounts", json={"name": "", "type": "checking"}, headers=headers
    )
    assert invalid.status_code == 400
    assert invalid.json()["success"] is False

    too_many = client.get("/api/transactions?limit=500", headers=headers)
    assert too_many.status_code == 400


def test_transfer_over_http_reports_insufficient_funds(client) -> None:
    headers = _auth(client)
    ids = []
    for name in ("Checking", "Savings"):
        response = client.post(
            "/api/accounts",
            json={"name": name, "type": "checking", "balance_cents": 1_000},
            headers=headers,
        )
        ids.append(response.json()["data"]["id"])

    response = client.post(
        "/api/accounts/transfer",
        json={
            "from_account_id": ids[0],
            "to_account_id": ids[1],
            "amount_cents": 5_000,
        },
        headers=headers,
    )

    assert response.status_code == 400
    assert "Insufficient" in response.json()["error"]


def test_default_categories_and_dashboard(client) -> None:
    headers = _auth(client)

    created = client.post("/api/categories/default", headers=headers)
    assert created.status_code == 201
    stats = client.get("/api/categories/stats", headers=headers).json()["data"]
    assert stats["total_categories"] == 13

    dashboard = client.get("/api/dashboard", headers=headers)
    assert dashboard.status_code == 200
    assert dashboard.json()["data"]["pending_transactions"] == 0


def _request(path: str) -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": path,
            "query_string": b"",
            "headers": [],
            "scheme": "http",
            "server": ("testserver", 80),
        }
    )


def test_integrity_errors_split_conflicts_from_constraint_failures() -> None:
    unique = IntegrityError(
        "INSERT", {}, Exception("UNIQUE constraint failed: accounts.name")
    )
    check = IntegrityError(
        "INSERT", {}, Exception("CHECK constraint failed: ck_goal_target_positive")
    )
    foreign = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))

    request = _request("/api/accounts")
    assert integrity_error_handler(request, unique).status_code == 409
    assert integrity_error_handler(request, check).status_code == 400
    response = integrity_error_handler(request, foreign)
    assert response.status_code == 400
    assert b"Record violates a data constraint" in response.body


def test_blank_description_over_http_is_a_bad_request(client) -> None:
    headers = _auth(client)
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "checking", "balance_cents": 1_000},
        headers=headers,
    ).json()["data"]
    category = client.post(
        "/api/categories", json={"name": "Food", "type": "expense"}, headers=headers
    ).json()["data"]
    txn = client.post(
        "/api/transactions",
        json={
            "description": "Lunch",
            "amount_cents": 500,
            "type": "expense",
            "date": "2025-03-10",
            "category_id": category["id"],
            "account_id": account["id"],
        },
        headers=headers,
    ).json()["data"]

    response = client.put(
        f"/api/transactions/{txn['id']}", json={"description": "   "}, headers=headers
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Description cannot be empty"


def test_main_serves_the_app_with_uvicorn(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr("uvicorn.run", lambda *args, **kwargs: calls.append(args))

    main.main()

    assert calls == [("main:app",)]
