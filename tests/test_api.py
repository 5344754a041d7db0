from fastapi.testclient import TestClient

from codebot.app import app
from codebot.service.runtime import get_runtime, reset_runtime_for_tests
from codebot.storage.models import User

GEMINI_KEY = "AIza" + "k" * 35
E2B_KEY = "e2b_" + "k" * 41


def _client() -> TestClient:
    return TestClient(app)


def test_activate_status_and_revoke_flow():
    client = _client()

    resp = client.post(
        "/api/keys/activate",
        json={"telegram_chat_id": 4242, "gemini_api_key": GEMINI_KEY, "e2b_api_key": E2B_KEY},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["tier"] == "BASIC"
    assert body["data"]["message_quota"] == 500
    assert GEMINI_KEY not in resp.text

    status = client.get("/api/keys/status", params={"telegram_chat_id": "4242"}).json()
    assert status["data"] == {
        "telegram_chat_id": "4242",
        "registered": True,
        "has_keys": True,
        "tier": "BASIC",
    }

    revoked = client.post("/api/keys/revoke", json={"telegram_chat_id": "4242"})
    assert revoked.status_code == 200
    assert revoked.json()["data"]["tier"] == "FREE"
    assert client.get("/api/keys/status", params={"telegram_chat_id": "4242"}).json()["data"][
        "has_keys"
    ] is False


def test_bad_key_format_is_a_validation_envelope():
    resp = _client().post(
        "/api/keys/activate",
        json={"telegram_chat_id": "1", "gemini_api_key": "nope", "e2b_api_key": E2B_KEY},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"] == {"field": "gemini_api_key"}


def test_missing_fields_are_rejected_with_envelope():
    resp = _client().post("/api/keys/activate", json={"telegram_chat_id": "1"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_revoke_unknown_chat_is_not_found():
    resp = _client().post("/api/keys/revoke", json={"telegram_chat_id": "nobody"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_status_for_unregistered_chat():
    data = _client().get("/api/keys/status", params={"telegram_chat_id": "9"}).json()["data"]
    assert data["registered"] is False
    assert data["tier"] is None


def test_admin_token_is_enforced_when_configured(monkeypatch):
    monkeypatch.setenv("ADMIN_API_TOKEN", "s3cret")
    reset_runtime_for_tests()
    client = _client()

    denied = client.get("/api/keys/status", params={"telegram_chat_id": "1"})
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "unauthorized"

    wrong = client.get(
        "/api/keys/status", params={"telegram_chat_id": "1"}, headers={"X-Admin-Token": "nope"}
    )
    assert wrong.status_code == 401

    allowed = client.get(
        "/api/keys/status", params={"telegram_chat_id": "1"}, headers={"X-Admin-Token": "s3cret"}
    )
    assert allowed.status_code == 200


def test_health_reports_store_and_cache():
    resp = _client().get("/health")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "healthy"
    assert data["checks"]["store"]["status"] == "healthy"
    assert data["checks"]["redis"]["status"] == "not_configured"


def test_health_is_503_when_store_is_down(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.store, "ping", lambda: False)
    resp = _client().get("/health")
    assert resp.status_code == 503
    assert resp.json()["data"]["status"] == "degraded"


def test_store_status_counts():
    runtime = get_runtime()
    runtime.store.create_user(User.new("1"))
    runtime.store.create_user(User.new("2"))
    client = _client()

    resp = client.post("/api/users/active", json={"telegram_chat_id": "2", "is_active": False})
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False

    data = client.get("/api/status").json()["data"]
    assert data["users"] == 2
    assert data["active_users"] == 1


def test_deactivated_account_can_be_cleared_back_to_unset():
    runtime = get_runtime()
    user = runtime.store.create_user(User.new("3"))
    client = _client()

    client.post("/api/users/active", json={"telegram_chat_id": "3", "is_active": False})
    resp = client.post("/api/users/active", json={"telegram_chat_id": "3", "is_active": None})

    assert resp.status_code == 200
    assert runtime.store.get_user(user.id).is_active is None
    operations = [e.operation_type for e in runtime.store.usage_logs]
    assert operations == ["account_deactivated", "account_activated"]


def test_set_active_for_unknown_chat_is_404():
    resp = _client().post("/api/users/active", json={"telegram_chat_id": "404", "is_active": True})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_store_status_failure_is_persistence_error(monkeypatch):
    runtime = get_runtime()

    def broken_status():
        raise RuntimeError("connection refused")

    monkeypatch.setattr(runtime.store, "status", broken_status)
    resp = _client().get("/api/status")

    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "persistence_error"
    assert "connection refused" not in resp.text


def test_request_id_is_echoed():
    resp = _client().get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.json()["request_id"] == "req-123"
