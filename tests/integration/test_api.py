"""Integration tests for API endpoints"""

import pytest
from fastapi.testclient import TestClient
from credits_gateway.utils.date_utils import period_key, utc_now


def signup(client: TestClient, account_id: str = "user_1", **fields) -> dict:
    response = client.post("/v1/accounts", json={"account_id": account_id, **fields})
    assert response.status_code == 201
    return response.json()


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    signup(client)
    client.post("/v1/authorize", json={"account_id": "user_1", "feature": "quiz_generation"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "credits_authorization_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_signup_grants_credits(client: TestClient):
    data = signup(client, email="student@school.edu")

    assert data["account"]["balance"] == 100.0
    assert data["decision"] == "allow"

    history = client.get("/v1/accounts/user_1/transactions").json()
    assert [t["kind"] for t in history["transactions"]] == ["bonus"]


def test_duplicate_signup_conflicts(client: TestClient):
    signup(client)
    response = client.post("/v1/accounts", json={"account_id": "user_1"})
    assert response.status_code == 409


def test_disposable_signup_is_flagged(client: TestClient):
    data = signup(client, email="burner@guerrillamail.com")

    assert data["decision"] == "block"
    log = client.get("/v1/accounts/user_1/abuse-log").json()
    assert log["entries"][0]["action"] == "signup"
    assert "Disposable email address detected" in log["entries"][0]["reasons"]


def test_authorize_flat_feature(client: TestClient):
    signup(client)

    response = client.post("/v1/authorize", json={"account_id": "user_1", "feature": "quiz_generation"})

    assert response.status_code == 200
    data = response.json()
    assert data["permitted"] is True
    assert data["charged"] == 30.0
    assert data["balance"] == 70.0
    assert data["transaction_id"] is not None


def test_authorize_chat_estimates_from_text(client: TestClient):
    signup(client)
    text = " ".join(["word"] * 100)

    data = client.post(
        "/v1/authorize",
        json={"account_id": "user_1", "feature": "chat", "text": text},
    ).json()

    assert data["charged"] == 2.5
    assert data["balance"] == 97.5


def test_authorize_insufficient_credits(client: TestClient):
    signup(client)

    response = client.post("/v1/authorize", json={"account_id": "user_1", "feature": "image_generation"})

    assert response.status_code == 402
    data = response.json()
    assert data["permitted"] is False
    assert data["reason"] == "insufficient credits"
    assert data["balance"] == 100.0


def test_authorize_unknown_account(client: TestClient):
    response = client.post("/v1/authorize", json={"account_id": "ghost", "feature": "chat", "text": "hi"})
    assert response.status_code == 404


def test_authorize_unknown_feature(client: TestClient):
    signup(client)
    response = client.post("/v1/authorize", json={"account_id": "user_1", "feature": "video"})
    assert response.status_code == 422


def test_admin_is_unlimited(client: TestClient):
    for _ in range(3):
        response = client.post("/v1/authorize", json={"account_id": "admin_1", "feature": "image_generation"})
        assert response.status_code == 200
        assert response.json()["unlimited"] is True
        assert response.json()["charged"] == 0.0

    balance = client.get("/v1/accounts/admin_1/balance").json()
    assert balance["unlimited"] is True
    assert balance["balance"] == 999999.0


def test_admin_email_in_request_body_is_ignored(client: TestClient):
    signup(client, email="student@school.edu")

    response = client.post(
        "/v1/authorize",
        json={"account_id": "user_1", "feature": "image_generation", "email": "admin@study.app"},
    )

    assert response.status_code == 402
    assert response.json()["unlimited"] is False
    assert client.get("/v1/accounts/user_1/balance").json()["balance"] == 100.0


def test_admin_by_stored_email_never_pays(client: TestClient):
    signup(client, "teacher_9", email="admin@study.app")

    auth = client.post("/v1/authorize", json={"account_id": "teacher_9", "feature": "chat", "text": "hi"}).json()
    reconciled = client.post(
        "/v1/reconcile",
        json={
            "account_id": "teacher_9",
            "transaction_id": auth["transaction_id"],
            "input_text": "hi",
            "output_text": " ".join(["a"] * 500),
        },
    ).json()

    assert auth["unlimited"] is True
    assert reconciled["adjustment"] == 0.0
    assert client.get("/v1/accounts/teacher_9/balance").json()["unlimited"] is True
    history = client.get("/v1/accounts/teacher_9/transactions").json()["transactions"]
    assert [t["kind"] for t in history] == ["bonus"]


def test_monthly_usage_limit(client: TestClient, seed_usage):
    signup(client)
    seed_usage("user_1", {period_key(utc_now()): 10})

    response = client.post("/v1/authorize", json={"account_id": "user_1", "feature": "chat", "text": "hi"})

    assert response.status_code == 429
    assert response.json()["reason"] == "usage limit reached"
    assert client.get("/v1/accounts/user_1/balance").json()["balance"] == 100.0


def test_reconcile_adjusts_by_difference(client: TestClient):
    signup(client)
    question = " ".join(["q"] * 40)  # 40 + 60 estimated words -> 1.0 credit
    auth = client.post(
        "/v1/authorize",
        json={"account_id": "user_1", "feature": "chat", "text": question},
    ).json()
    assert auth["charged"] == 1.0

    payload = {
        "account_id": "user_1",
        "transaction_id": auth["transaction_id"],
        "input_text": question,
        "output_text": " ".join(["a"] * 160),  # 200 words -> 2.0 credits
    }
    first = client.post("/v1/reconcile", json=payload).json()
    second = client.post("/v1/reconcile", json=payload).json()

    assert first["adjustment"] == 1.0
    assert first["balance"] == 98.0
    assert second["already_applied"] is True
    assert client.get("/v1/accounts/user_1/balance").json()["balance"] == 98.0


def test_reconcile_unknown_transaction(client: TestClient):
    signup(client)
    response = client.post(
        "/v1/reconcile",
        json={"account_id": "user_1", "transaction_id": 9999, "input_text": "a", "output_text": "b"},
    )
    assert response.status_code == 404


def test_purchase_webhook_is_idempotent(client: TestClient):
    signup(client)
    payload = {"account_id": "user_1", "package": "starter", "payment_reference": "pi_123"}

    first = client.post("/v1/credits/purchase", json=payload)
    second = client.post("/v1/credits/purchase", json=payload)

    assert first.status_code == 200
    assert first.json()["balance"] == 1100.0
    assert second.json()["transaction_id"] == first.json()["transaction_id"]
    assert client.get("/v1/accounts/user_1/balance").json()["balance"] == 1100.0


def test_purchase_unknown_package(client: TestClient):
    signup(client)
    response = client.post(
        "/v1/credits/purchase",
        json={"account_id": "user_1", "package": "mega", "payment_reference": "pi_1"},
    )
    assert response.status_code == 422


def test_refund_credit(client: TestClient):
    signup(client)
    response = client.post("/v1/credits/refund", json={"account_id": "user_1", "credits": "12.5"})

    assert response.status_code == 200
    assert response.json()["balance"] == 112.5


def test_refund_request_and_resolution(client: TestClient):
    signup(client)

    created = client.post("/v1/refunds/request", json={"account_id": "user_1", "reason": "Bad quiz"})
    assert created.status_code == 201
    refund_id = created.json()["refund_id"]
    assert created.json()["status"] == "pending"

    resolved = client.post(f"/v1/refunds/{refund_id}/resolve", json={"status": "approved"})
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "approved"

    missing = client.post("/v1/refunds/9999/resolve", json={"status": "approved"})
    assert missing.status_code == 404


def test_refund_abuse_leads_to_ban(client: TestClient, age_account):
    signup(client)
    age_account("user_1", days=60)

    def request_refund():
        return client.post("/v1/refunds/request", json={"account_id": "user_1", "reason": "again"})

    first = request_refund()
    assert first.json()["decision"] == "allow"
    # One refund a moment ago (+40) -> warn, still recorded
    second = request_refund()
    assert second.status_code == 201
    assert second.json()["decision"] == "warn"
    for response in (first, second):
        client.post(f"/v1/refunds/{response.json()['refund_id']}/resolve", json={"status": "approved"})

    # Second refund (+30), recent (+40), two approved (+35) -> ban
    third = request_refund()
    assert third.status_code == 403
    assert third.json()["decision"] == "ban"

    response = client.post("/v1/authorize", json={"account_id": "user_1", "feature": "chat", "text": "hi"})
    assert response.status_code == 403
    assert response.json()["decision"] == "ban"
    assert response.json()["reason"].startswith("account banned")

    decisions = [e["decision"] for e in client.get("/v1/accounts/user_1/abuse-log").json()["entries"]]
    assert decisions == ["ban", "ban", "warn"]

@pytest.mark.parametrize("path", ["/balance", "/transactions"])
def test_unknown_account_reads(client: TestClient, path: str):
    assert client.get(f"/v1/accounts/ghost{path}").status_code == 404
