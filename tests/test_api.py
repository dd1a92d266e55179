import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, create_db_engine
from main import app, get_db
from security import Identity, decode_token


@pytest.fixture()
def client():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
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
        engine.dispose()


def _register(client: TestClient, email: str, password: str = "secret1"):
    return client.post(
        "/api/auth/register", json={"email": email, "password": password}
    )


def _auth(client: TestClient, email: str, password: str = "secret1") -> dict:
    _register(client, email, password)
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def test_register_twice_conflicts(client: TestClient) -> None:
    first = client.post(
        "/api/auth/register",
        json={"email": "x@example.com", "password": "secret1", "name": "Xavi"},
    )
    assert first.status_code == 201
    assert first.json()["user"]["email"] == "x@example.com"
    assert first.json()["user"]["name"] == "Xavi"
    assert "password" not in str(first.json())

    second = _register(client, "x@example.com")
    assert second.status_code == 409


def test_register_validation_lists_fields(client: TestClient) -> None:
    resp = client.post("/api/auth/register", json={"email": "bad", "password": "1"})
    assert resp.status_code == 400
    assert {i["field"] for i in resp.json()["detail"]} == {"email", "password"}


def test_login_token_decodes_to_identity(client: TestClient) -> None:
    user_id = _register(client, "x@example.com").json()["user"]["id"]
    resp = client.post(
        "/api/auth/login", json={"email": "x@example.com", "password": "secret1"}
    )
    assert resp.status_code == 200
    assert decode_token(resp.json()["token"]) == Identity(
        user_id=user_id, email="x@example.com"
    )


def test_login_failures_look_identical(client: TestClient) -> None:
    _register(client, "x@example.com")
    wrong_password = client.post(
        "/api/auth/login", json={"email": "x@example.com", "password": "nope!!"}
    )
    unknown_email = client.post(
        "/api/auth/login", json={"email": "who@example.com", "password": "secret1"}
    )
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()


def test_access_guard(client: TestClient) -> None:
    missing = client.get("/api/expenses")
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Access denied. No token provided."

    bare = client.get("/api/expenses", headers={"Authorization": "Bearer"})
    assert bare.status_code == 401

    invalid = client.get("/api/expenses", headers={"Authorization": "Bearer junk"})
    assert invalid.status_code == 403
    assert invalid.json()["detail"] == "Invalid or expired token."


def test_expense_scenario_end_to_end(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")

    created = client.post(
        "/api/expenses",
        json={"amount": 42.50, "date": "2024-03-15", "category": "food", "userId": 999},
        headers=headers,
    )
    assert created.status_code == 201
    expense = created.json()
    assert expense["amount"] == 42.5
    assert expense["date"] == "2024-03-15T00:00:00.000Z"
    assert expense["userId"] != 999

    fetched = client.get(f"/api/expenses/{expense['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["category"] == "food"

    yearly = client.get("/api/reports/monthly", params={"year": 2024}, headers=headers)
    assert yearly.status_code == 200
    body = yearly.json()
    assert len(body["data"]) == 12
    assert body["data"][2] == {"month": "March", "total": 42.5}
    assert body["totalSpent"] == sum(m["total"] for m in body["data"])

    month = client.get(
        "/api/reports/month", params={"year": 2024, "month": 3}, headers=headers
    )
    assert month.status_code == 200
    assert month.json()["month"] == "March"
    assert month.json()["totalSpent"] >= 42.5
    assert [e["id"] for e in month.json()["expenses"]] == [expense["id"]]


def test_cross_user_access_is_not_found(client: TestClient) -> None:
    alice = _auth(client, "alice@example.com")
    bob = _auth(client, "bob@example.com")

    expense_id = client.post(
        "/api/expenses", json={"amount": 5, "date": "2024-01-01"}, headers=alice
    ).json()["id"]
    category_id = client.post(
        "/api/categories", json={"name": "Food"}, headers=alice
    ).json()["id"]

    assert client.get(f"/api/expenses/{expense_id}", headers=bob).status_code == 404
    assert (
        client.put(
            f"/api/expenses/{expense_id}", json={"amount": 1}, headers=bob
        ).status_code
        == 404
    )
    assert client.delete(f"/api/expenses/{expense_id}", headers=bob).status_code == 404
    assert (
        client.put(
            f"/api/categories/{category_id}", json={"name": "Mine"}, headers=bob
        ).status_code
        == 404
    )
    assert client.delete(f"/api/categories/{category_id}", headers=bob).status_code == 404
    assert client.get("/api/categories", headers=bob).json() == []
    assert client.get(f"/api/expenses/{expense_id}", headers=alice).status_code == 200


def test_bad_ids_are_rejected(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")
    assert client.get("/api/expenses/abc", headers=headers).status_code == 400
    assert client.delete("/api/categories/0", headers=headers).status_code == 400


def test_listing_paginates_and_validates(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")
    for day in range(1, 6):
        client.post(
            "/api/expenses",
            json={"amount": day, "date": f"2024-02-0{day}", "category": "food"},
            headers=headers,
        )

    resp = client.get("/api/expenses", params={"limit": 2, "page": 1}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["pagination"] == {
        "total": 5,
        "page": 1,
        "limit": 2,
        "totalPages": 3,
    }
    assert [e["amount"] for e in resp.json()["data"]] == [5, 4]

    filtered = client.get(
        "/api/expenses",
        params={"endDate": "2024-02-02", "minAmount": "2"},
        headers=headers,
    )
    assert [e["amount"] for e in filtered.json()["data"]] == [2]

    bad = client.get(
        "/api/expenses", params={"page": 0, "limit": 101}, headers=headers
    )
    assert bad.status_code == 400
    assert {i["field"] for i in bad.json()["detail"]} == {"page", "limit"}


def test_category_lifecycle(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")

    food = client.post("/api/categories", json={"name": "food"}, headers=headers)
    assert food.status_code == 201
    dup = client.post("/api/categories", json={"name": "food"}, headers=headers)
    assert dup.status_code == 409
    client.post("/api/categories", json={"name": "bills"}, headers=headers)

    names = [c["name"] for c in client.get("/api/categories", headers=headers).json()]
    assert names == ["bills", "food"]

    client.post(
        "/api/expenses",
        json={"amount": 3, "date": "2024-01-01", "category": "food"},
        headers=headers,
    )
    blocked = client.delete(f"/api/categories/{food.json()['id']}", headers=headers)
    assert blocked.status_code == 400
    assert blocked.json()["detail"] == (
        "Cannot delete category because it is used in existing expenses"
    )
    assert len(client.get("/api/categories", headers=headers).json()) == 2

    renamed = client.put(
        f"/api/categories/{food.json()['id']}", json={"name": "groceries"}, headers=headers
    )
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "groceries"

    deleted = client.delete(f"/api/categories/{food.json()['id']}", headers=headers)
    assert deleted.status_code == 200


def test_report_query_validation(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")
    bad_year = client.get("/api/reports/monthly", params={"year": 1800}, headers=headers)
    assert bad_year.status_code == 400
    bad_month = client.get("/api/reports/month", params={"month": 0}, headers=headers)
    assert bad_month.status_code == 400


def test_invalid_json_body(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")
    resp = client.post(
        "/api/expenses",
        content="{not json",
        headers={**headers, "Content-Type": "application/json"},
    )
    assert resp.status_code == 400


def test_health(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "API is running"


def test_far_future_end_date_lists_normally(client: TestClient) -> None:
    headers = _auth(client, "x@example.com")
    resp = client.get("/api/expenses", params={"endDate": "9999-12-31"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["pagination"]["total"] == 0


def test_store_failures_answer_internal_error_without_detail(
    client: TestClient,
) -> None:
    headers = _auth(client, "x@example.com")

    broken = create_db_engine("sqlite://", poolclass=StaticPool)
    BrokenSession = sessionmaker(bind=broken, autoflush=False)

    def tableless_db():
        db = BrokenSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = tableless_db
    try:
        for path in ("/api/reports/monthly", "/api/reports/month", "/api/expenses"):
            resp = client.get(path, headers=headers)
            assert resp.status_code == 500
            assert resp.json() == {"detail": "Internal server error"}
    finally:
        broken.dispose()


def test_responses_carry_security_headers(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
