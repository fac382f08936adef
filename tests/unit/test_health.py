"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from jobflow.main import app
from jobflow.routes import health

client = TestClient(app)

HEALTHY_DB = {"healthy": True, "pool_stats": {"pool_size": 2, "pool_available": 2}}


def _patched(redis_ok=True, db=HEALTHY_DB, stripe_key="sk_test", webhook_secret="whsec_test"):
    return (
        patch.object(health.fast_redis, "ping", AsyncMock(return_value=redis_ok)),
        patch.object(health, "db_health_check", AsyncMock(return_value=db)),
        patch.object(health.settings, "STRIPE_SECRET_KEY", stripe_key),
        patch.object(health.settings, "STRIPE_WEBHOOK_SECRET", webhook_secret),
    )


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "jobflow"}


def test_readyz_endpoint_all_services_healthy():
    redis_patch, db_patch, key_patch, secret_patch = _patched()
    with redis_patch, db_patch, key_patch, secret_patch:
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 2
    assert data["checks"]["configuration"]["issues"] is None


def test_readyz_endpoint_redis_unhealthy():
    redis_patch, db_patch, key_patch, secret_patch = _patched(redis_ok=False)
    with redis_patch, db_patch, key_patch, secret_patch:
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy():
    redis_patch, db_patch, key_patch, secret_patch = _patched(
        db={"healthy": False, "error": "Connection failed"}
    )
    with redis_patch, db_patch, key_patch, secret_patch:
        response = client.get("/readyz")

    assert response.status_code == 503
    database = response.json()["checks"]["database"]
    assert database["ok"] is False
    assert database["error"] == "Connection failed"


def test_readyz_endpoint_missing_billing_config():
    redis_patch, db_patch, key_patch, secret_patch = _patched(webhook_secret=None)
    with redis_patch, db_patch, key_patch, secret_patch:
        response = client.get("/readyz")

    assert response.status_code == 503
    configuration = response.json()["checks"]["configuration"]
    assert configuration["ok"] is False
    assert configuration["issues"] == ["STRIPE_WEBHOOK_SECRET not set"]


def test_readyz_includes_latency_metrics():
    redis_patch, db_patch, key_patch, secret_patch = _patched()
    with redis_patch, db_patch, key_patch, secret_patch:
        checks = client.get("/readyz").json()["checks"]

    assert isinstance(checks["redis"]["latency_ms"], (int, float))
    assert isinstance(checks["database"]["latency_ms"], (int, float))
