"""
Tests for FastAPI application setup: health/info endpoints, route registration,
request validation errors, CORS and the startup directories.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from datadeployer.config import settings
from datadeployer.main import APP_VERSION, app

EXPECTED_ROUTES = [
    "/health",
    "/api/info",
    "/api/test-aws",
    "/api/test-snowflake",
    "/api/test-gemini",
    "/api/self-heal-validation",
    "/api/ai-validations",
    "/api/snowflake/tables",
    "/api/validation-summary",
    "/api/deploy",
    "/api/deployment/{deployment_id}/retry",
    "/api/stepfunction/execute",
    "/api/activity/executions",
    "/api/activity/logs/{execution_arn:path}",
    "/api/dashboard/stats",
]


def test_routes_registered() -> None:
    paths = {getattr(route, "path", None) for route in app.routes}
    missing = [p for p in EXPECTED_ROUTES if p not in paths]
    assert missing == []


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["version"] == APP_VERSION


def test_info_lists_modules(client: TestClient) -> None:
    data = client.get("/api/info").json()
    assert data["modules"] == settings.DEPLOY_MODULES
    assert data["features"]["self_healing_retries"] == settings.SELF_HEAL_MAX_RETRIES


def test_validation_error_shape(client: TestClient) -> None:
    response = client.post("/api/test-query", json={"query": "SELECT 1"})

    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert "snowflakeConfig" in data["message"]


def test_cors_preflight(client: TestClient) -> None:
    response = client.options(
        "/api/ai-validations",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers


def test_lifespan_creates_data_directories(data_dir) -> None:
    with TestClient(app):
        pass

    assert (data_dir / "configs").is_dir()
    assert (data_dir / "ai-validations").is_dir()
    assert (data_dir / "deployments" / "modules").is_dir()
    assert (data_dir / "uploads").is_dir()
