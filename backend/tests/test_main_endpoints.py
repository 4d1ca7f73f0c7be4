from fastapi.testclient import TestClient


def test_root_health(client: TestClient):
    r = client.get("/")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "healthy"
    assert isinstance(data["version"], str)
    assert isinstance(data["timestamp"], str)
    assert "T" in data["timestamp"]


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "healthy"
    assert isinstance(data["version"], str)


def test_health_degraded_when_store_unreachable(app, client: TestClient):
    from app.core.web.dependencies import get_quota_store

    class DownStore:
        name = "redis"

        def ping(self) -> bool:
            return False

    app.dependency_overrides[get_quota_store] = lambda: DownStore()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "degraded"


def test_security_headers(client: TestClient):
    r = client.get("/")
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


def test_debug_reports_key_source_without_value(client: TestClient, monkeypatch, tmp_path):
    from app.core.config import settings

    monkeypatch.setattr(settings, "secrets_dir", str(tmp_path))
    monkeypatch.setenv("GEMINI_API_KEY", "secret-value")

    r = client.get("/debug")
    assert r.status_code == 200
    data = r.json()
    assert data["api_key_status"] == "VAR_OK"
    assert data["quota_backend"] == "memory"
    assert "secret-value" not in r.text


def test_debug_prefers_secret_file(client: TestClient, monkeypatch, tmp_path):
    from app.core.config import settings

    (tmp_path / "GEMINI_API_KEY").write_text("from-file\n", encoding="utf-8")
    monkeypatch.setattr(settings, "secrets_dir", str(tmp_path))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    r = client.get("/debug")
    assert r.json()["api_key_status"] == "SECRET_OK"


def test_debug_not_found(client: TestClient, monkeypatch, tmp_path):
    from app.core.config import settings

    monkeypatch.setattr(settings, "secrets_dir", str(tmp_path))
    monkeypatch.setattr(settings, "gemini_api_key", None)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    r = client.get("/debug")
    assert r.json()["api_key_status"] == "NOT_FOUND"


def test_debug_hidden_in_production(monkeypatch):
    from app.core.config import settings
    from app.main import create_app

    monkeypatch.setattr(settings, "debug", False)
    monkeypatch.setattr(settings, "allowed_hosts", "testserver")
    client = TestClient(create_app())

    assert client.get("/debug").status_code == 404
    assert client.get("/").status_code == 200
