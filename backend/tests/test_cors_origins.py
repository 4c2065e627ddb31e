from fastapi.testclient import TestClient

from backend.billing.main import (
    LOCAL_DEVELOPMENT_ORIGINS,
    _load_allowed_origins_from_env,
    _resolve_allowed_origins,
    _split_raw_origins,
    app,
)


def test_split_raw_origins_accepts_commas_and_whitespace():
    raw = "http://localhost:5173, http://127.0.0.1:5173 https://billing.example.com"
    assert _split_raw_origins(raw) == [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "https://billing.example.com",
    ]


def test_load_allowed_origins_from_env_normalizes_values(monkeypatch):
    monkeypatch.setenv(
        "BACKEND_ALLOWED_ORIGINS",
        "https://billing.example.com/ http://127.0.0.1:5173",
    )

    assert _load_allowed_origins_from_env() == [
        "http://127.0.0.1:5173",
        "https://billing.example.com",
    ]


def test_resolved_origins_always_include_local_development(monkeypatch):
    monkeypatch.setenv("BACKEND_ALLOWED_ORIGINS", "https://billing.example.com")

    origins = _resolve_allowed_origins()

    assert "https://billing.example.com" in origins
    assert LOCAL_DEVELOPMENT_ORIGINS <= set(origins)


def test_prepaid_endpoint_includes_cors_headers_for_local_dev_origin():
    client = TestClient(app)
    origin = "http://localhost:5173"

    response = client.options(
        "/prepaid",
        headers={
            "Origin": origin,
            "Access-Control-Request-Method": "GET",
        },
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == origin
