import pytest


@pytest.mark.asyncio
async def test_health_endpoint_returns_200(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_endpoint_has_required_fields(client):
    response = await client.get("/api/v1/health")
    data = response.json()
    assert "status" in data
    assert "database" in data
    assert "rules_version" in data
    assert "timestamp" in data
    assert "environment" in data
    assert "version" in data


@pytest.mark.asyncio
async def test_health_endpoint_reports_versions(client):
    response = await client.get("/api/v1/health")
    data = response.json()
    assert data["status"] == "healthy"
    assert data["rules_version"] == "2025.12.1"
    assert data["version"] == "0.1.0"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/api/v1/health", headers={"X-Request-ID": "trace-42"})
    assert response.headers["X-Request-ID"] == "trace-42"

    generated = await client.get("/api/v1/health")
    assert len(generated.headers["X-Request-ID"]) == 8
