import pytest

from kfactor_api.services.ephemeral import EphemeralStore


@pytest.mark.asyncio
async def test_healthz(client) -> None:
    response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(client) -> None:
    response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["ephemeral_store"]["status"] == "ready"
    assert "analytics" in components


@pytest.mark.asyncio
async def test_readyz_degrades_when_store_is_down(client, app_with_db, unavailable_redis) -> None:
    app, _ = app_with_db
    app.state.ephemeral_store = EphemeralStore(unavailable_redis)

    response = await client.get("/api/v1/readyz")

    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["components"]["ephemeral_store"]["status"] == "degraded"
    assert "transient" in payload["components"]["ephemeral_store"]["detail"]


@pytest.mark.asyncio
async def test_readyz_marks_unconfigured_store_disabled(client, app_with_db) -> None:
    app, _ = app_with_db
    app.state.ephemeral_store = EphemeralStore(None)

    response = await client.get("/api/v1/readyz")

    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["components"]["ephemeral_store"]["status"] == "disabled"
