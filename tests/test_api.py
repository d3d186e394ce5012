import csv
from io import StringIO

import pytest
from fastapi.testclient import TestClient

import main
from config import Settings
from database import memory_session_factory
from periods import local_today


def _settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        use_local_backend=True,
        firebase_api_key="",
        firebase_project_id="",
        firebase_auth_domain="",
        auth_emulator_host=None,
        firestore_emulator_host=None,
        request_timeout_secs=5,
        poll_interval_secs=15,
        timezone="Asia/Jakarta",
        locale="en",
        session_secret="test-secret",
        log_level="INFO",
    )


@pytest.fixture
def client():
    main.configure(_settings(), session_factory=memory_session_factory())
    yield TestClient(main.app)
    main.registry.clear()
    main.configure()


def _register(client, email="ana@example.com", password="secret1"):
    return client.post("/api/auth/register", json={"email": email, "password": password})


def test_register_sets_session_and_me(client):
    response = _register(client)

    assert response.status_code == 201
    assert response.json()["email"] == "ana@example.com"
    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["uid"] == response.json()["uid"]


def test_login_errors_are_localized_messages(client):
    _register(client)
    client.post("/api/auth/logout")

    wrong = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "nope-nope"}
    )
    missing = client.post("/api/auth/login", json={"email": "", "password": ""})
    duplicate = _register(client)

    assert wrong.status_code == 401
    assert wrong.json() == {"detail": "Incorrect password"}
    assert missing.status_code == 400
    assert missing.json() == {"detail": "Email and password are required"}
    assert duplicate.status_code == 409


def test_transactions_require_session(client):
    response = client.get("/api/transactions")
    assert response.status_code == 401
    assert response.json() == {"detail": "You need to log in first"}

    created = client.post("/api/transactions", json={"amount": 1})
    assert created.status_code == 401


def test_transaction_lifecycle(client):
    _register(client)

    created = client.post(
        "/api/transactions",
        json={"amount": "50000", "category": "Makanan", "name": "Lunch", "kind": "expense"},
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]

    listing = client.get("/api/transactions").json()
    assert listing["state"] == "active"
    assert listing["error"] is None
    assert [item["amount"] for item in listing["items"]] == [50000]
    assert listing["items"][0]["date"] == local_today().isoformat()
    assert listing["items"][0]["note"] == ""

    patched = client.patch(f"/api/transactions/{txn_id}", json={"amount": 70000})
    assert patched.status_code == 200
    assert client.get("/api/summary").json()["totals"] == {
        "income": 0,
        "expense": 70000,
        "balance": -70000,
    }

    deleted = client.delete(f"/api/transactions/{txn_id}")
    assert deleted.status_code == 200
    assert client.get("/api/transactions").json()["items"] == []


def test_invalid_transaction_is_unprocessable(client):
    _register(client)

    response = client.post(
        "/api/transactions", json={"amount": "abc", "category": "", "name": "x", "kind": "expense"}
    )

    assert response.status_code == 422
    assert response.json() == {"detail": "Some transaction fields are missing or invalid"}


def test_summary_groups_by_category(client):
    _register(client)
    for amount, kind in ((10, "expense"), (5, "income")):
        client.post(
            "/api/transactions",
            json={"amount": amount, "category": "Food", "name": "x", "kind": kind},
        )

    summary = client.get("/api/summary").json()

    assert summary["by_category"]["Food"]["amount"] == 15
    assert summary["expense_breakdown"] == [{"name": "Food", "amount": 10, "percent": 100.0}]


def test_monthly_report_download(client):
    _register(client)
    client.post(
        "/api/transactions",
        json={"amount": 200000, "category": "Gaji", "name": "Salary", "kind": "income"},
    )

    response = client.get("/api/reports/monthly")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    expected = f"finance_report_monthly_{local_today().isoformat()}.csv"
    assert expected in response.headers["content-disposition"]
    rows = list(csv.reader(StringIO(response.text)))
    assert rows[0][0] == "Date"
    assert rows[1][1:5] == ["Salary", "Gaji", "Income", "200000"]
    assert rows[-1][1] == "Balance"
    assert rows[-1][4] == "200000"


def test_unknown_report_period_is_rejected(client):
    _register(client)
    assert client.get("/api/reports/daily").status_code == 400


def test_retry_resubscribes(client):
    _register(client)
    response = client.post("/api/transactions/retry")
    assert response.status_code == 200
    assert response.json() == {"state": "active"}


def test_logout_ends_session(client):
    _register(client)

    assert client.post("/api/auth/logout").status_code == 200

    assert client.get("/api/auth/me").status_code == 401
    assert len(main.registry) == 0


def test_suggested_categories(client):
    data = client.get("/api/categories/suggested").json()
    assert "Gaji" in data["income"]
    assert "Makanan" in data["expense"]
