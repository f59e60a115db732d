from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
import schemas
from database import Base, get_db


@pytest.fixture()
def app_client():
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

    main.app.dependency_overrides[get_db] = override_get_db

    def make_client():
        return TestClient(main.app)

    yield make_client
    main.app.dependency_overrides.clear()


def _register(client: TestClient, name: str) -> dict:
    response = client.post(
        "/auth/register",
        json={"name": name, "email": f"{name.lower()}@example.com", "password": "correct horse"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_unauthenticated_requests(app_client) -> None:
    client = app_client()
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/categories").status_code == 401
    assert client.get("/dashboard").status_code == 401


def test_register_login_and_profile(app_client) -> None:
    client = app_client()
    user = _register(client, "Alice")
    assert user["currency"] == "EUR"
    assert user["partnerId"] is None

    duplicate = client.post(
        "/auth/register",
        json={"name": "Alice", "email": "ALICE@example.com", "password": "another one"},
    )
    assert duplicate.status_code == 409

    client.post("/auth/logout")
    assert client.get("/profile").status_code == 401

    bad = client.post("/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert bad.status_code == 401
    ok = client.post(
        "/auth/login", json={"email": "alice@example.com", "password": "correct horse"}
    )
    assert ok.status_code == 200

    updated = client.put("/profile", json={"name": "Alice B", "currency": "CHF"})
    assert updated.status_code == 200
    assert updated.json()["currency"] == "CHF"

    invalid = client.put("/profile", json={"name": "A", "currency": "JPY"})
    assert invalid.status_code == 400
    fields = {error["field"] for error in invalid.json()["errors"]}
    assert fields == {"name", "currency"}


def test_category_endpoints_map_errors(app_client) -> None:
    client = app_client()
    _register(client, "Alice")

    categories = client.get("/categories").json()
    assert len(categories) == 14

    created = client.post(
        "/categories", json={"name": "Pets", "type": "expense", "color": "#AABBCC"}
    )
    assert created.status_code == 201
    category_id = created.json()["id"]
    assert created.json()["isCustom"] is True

    forbidden = client.put(
        "/categories/default_groceries",
        json={"name": "Food", "type": "expense", "color": "#000000"},
    )
    assert forbidden.status_code == 403

    client.post(
        "/transactions",
        json={
            "description": "Vet",
            "amount": "45.00",
            "categoryId": category_id,
            "date": "2025-06-05T10:00:00",
        },
    )
    conflict = client.delete(f"/categories/{category_id}")
    assert conflict.status_code == 409
    assert client.delete("/categories/unknown-id").status_code == 404


def test_transactions_and_dashboard_use_zero_indexed_months(app_client) -> None:
    client = app_client()
    _register(client, "Alice")

    response = client.post(
        "/transactions",
        json={
            "description": "Insurance",
            "amount": "480.00",
            "categoryId": "default_insurance",
            "date": "2024-03-15T00:00:00",
            "repeatType": "annual",
        },
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["repeatType"] == "annual"
    assert body["category"]["name"] == "category_insurance"

    march = client.get("/dashboard", params={"month": 2, "year": 2030}).json()
    assert march["month"] == 2
    assert march["balance"]["expenses"] == 480.0
    june = client.get("/dashboard", params={"month": 5, "year": 2030}).json()
    assert june["balance"]["expenses"] == 0.0

    listed = client.get("/transactions", params={"month": 2, "year": 2030}).json()
    assert [row["description"] for row in listed] == ["Insurance"]
    annual = client.get("/transactions", params={"annual": "true"}).json()
    assert len(annual) == 1

    assert client.get("/dashboard", params={"month": 12, "year": 2030}).status_code == 400

    invalid = client.post(
        "/transactions",
        json={"description": "", "amount": "-1", "categoryId": "default_dining", "date": "x"},
    )
    assert invalid.status_code == 400
    assert {"description", "amount", "date"} <= {e["field"] for e in invalid.json()["errors"]}

    txn_id = body["id"]
    assert client.delete(f"/transactions/{txn_id}").status_code == 200
    assert client.delete(f"/transactions/{txn_id}").status_code == 404


def test_partner_flow_over_http(app_client) -> None:
    alice_client = app_client()
    bob_client = app_client()
    alice = _register(alice_client, "Alice")
    bob = _register(bob_client, "Bob")

    found = alice_client.get("/partner/search", params={"q": "bo"}).json()
    assert [row["id"] for row in found] == [bob["id"]]

    invite = alice_client.post("/partner/invite", json={"toUserId": bob["id"]})
    assert invite.status_code == 201
    assert alice_client.post("/partner/invite", json={"toUserId": bob["id"]}).status_code == 409

    sent = alice_client.get("/partner/sent-invitations").json()
    assert [row["toUser"]["id"] for row in sent] == [bob["id"]]
    [received] = bob_client.get("/partner/received-invitations").json()

    accepted = bob_client.post("/partner/accept", json={"token": received["token"]})
    assert accepted.status_code == 200
    info = alice_client.get("/partner/info").json()
    assert info["partner"]["id"] == bob["id"]
    assert info["user"]["partnerId"] == bob["id"]

    shared = alice_client.post("/lists", json={"title": "Party", "isShared": True}).json()
    item = bob_client.post(
        f"/lists/{shared['id']}/items",
        json={"name": "Cake", "estimatedPrice": "12.50", "categoryId": "default_dining"},
    )
    assert item.status_code == 201
    checked = bob_client.post(
        f"/lists/{shared['id']}/items/{item.json()['id']}/check", json={"isChecked": True}
    ).json()
    assert checked["transactionCreated"] is not None

    assert alice_client.post("/partner/remove").status_code == 200
    assert alice_client.get("/partner/info").json()["partner"] is None
    assert bob_client.get(f"/lists/{shared['id']}").status_code == 404
    assert alice_client.post("/partner/remove").status_code == 400
    assert alice["id"] != bob["id"]


def test_cron_endpoint_checks_bearer_secret(app_client, monkeypatch) -> None:
    client = app_client()
    monkeypatch.setattr(
        main,
        "get_settings",
        lambda: SimpleNamespace(cron_secret="s3cret", scheduler_enabled=False),
    )

    assert client.post("/cron/recurring-transactions").status_code == 401
    wrong = client.post(
        "/cron/recurring-transactions", headers={"Authorization": "Bearer nope"}
    )
    assert wrong.status_code == 401

    ok = client.post(
        "/cron/recurring-transactions", headers={"Authorization": "Bearer s3cret"}
    )
    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert "createdCount" in ok.json()


def test_offset_transaction_dates_land_in_local_month(app_client, monkeypatch) -> None:
    monkeypatch.setattr(schemas, "get_settings", lambda: SimpleNamespace(timezone="Europe/Berlin"))
    client = app_client()
    _register(client, "Alice")

    created = client.post(
        "/transactions",
        json={
            "description": "Rent",
            "amount": "955.00",
            "categoryId": "default_housing",
            "date": "2025-05-31T22:00:00.000Z",
        },
    )
    assert created.status_code == 201, created.text
    assert created.json()["date"] == "2025-06-01T00:00:00"

    june = client.get("/transactions", params={"month": 5, "year": 2025}).json()
    assert [row["description"] for row in june] == ["Rent"]
    assert client.get("/transactions", params={"month": 4, "year": 2025}).json() == []


def test_mixed_offset_end_date_is_validated_not_crashed(app_client, monkeypatch) -> None:
    monkeypatch.setattr(schemas, "get_settings", lambda: SimpleNamespace(timezone="Europe/Berlin"))
    client = app_client()
    _register(client, "Alice")
    body = {
        "description": "Gym",
        "amount": "30.00",
        "categoryId": "default_healthcare",
        "date": "2025-06-01T00:00:00Z",
        "repeatType": "until",
    }

    before = client.post("/transactions", json={**body, "endDate": "2025-05-15T00:00:00"})
    assert before.status_code == 400
    assert before.json()["detail"] == "Validation failed"

    ok = client.post("/transactions", json={**body, "endDate": "2025-12-01T00:00:00"})
    assert ok.status_code == 201, ok.text
    assert ok.json()["endDate"] == "2025-12-01T00:00:00"
