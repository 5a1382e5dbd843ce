"""
Tests for scheduled import and webhook API endpoints.
"""

import uuid

import pytest
from httpx import AsyncClient

from timetiles.services import scheduler_service
from timetiles.services.url_fetch_service import FetchResult

CSV = b"id,title,city\n1,Jazz,Riga\n2,Rock,Berlin\n"


class StaticFetcher:
    """Replaces UrlFetchService so triggers never touch the network."""

    def __init__(self, session, settings):
        self.settings = settings

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def fetch(self, url, auth=None, cache_policy=None, bypass_cache=False) -> FetchResult:
        return FetchResult(url, CSV, "text/csv", "csv")


@pytest.fixture
def static_fetcher(monkeypatch):
    monkeypatch.setattr(scheduler_service, "UrlFetchService", StaticFetcher)


def schedule_payload(catalog, **overrides) -> dict:
    payload = {
        "name": "City feed",
        "source_url": "https://data.example.org/events.csv",
        "catalog_uuid": str(catalog.uuid),
        "frequency": "daily",
        "webhook_enabled": True,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
async def schedule(client: AsyncClient, catalog, headers: dict) -> dict:
    response = await client.post("/api/v1/scheduled-imports", json=schedule_payload(catalog), headers=headers)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_create_schedule(schedule: dict):
    """Test a new schedule has a next run and a webhook token."""
    assert schedule["enabled"] is True
    assert schedule["next_run"] is not None
    assert len(schedule["webhook_token"]) >= 16
    assert schedule["created_by"] == "tester"
    assert schedule["statistics"]["total_runs"] == 0
    assert "auth_config" not in schedule


@pytest.mark.asyncio
async def test_create_schedule_needs_frequency(client: AsyncClient, catalog):
    """Test a frequency schedule without a frequency is refused."""
    response = await client.post(
        "/api/v1/scheduled-imports", json=schedule_payload(catalog, frequency=None)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_schedule_invalid_cron(client: AsyncClient, catalog, headers: dict):
    """Test an unparseable cron expression is a validation error."""
    response = await client.post(
        "/api/v1/scheduled-imports",
        json=schedule_payload(catalog, schedule_type="cron", frequency=None, cron_expression="every tuesday"),
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["field"] == "cron_expression"


@pytest.mark.asyncio
async def test_create_schedule_untrusted(client: AsyncClient, catalog):
    """Test trust level 0 may not own active schedules."""
    response = await client.post(
        "/api/v1/scheduled-imports",
        json=schedule_payload(catalog),
        headers={"X-Actor-Id": "newcomer", "X-Actor-Trust-Level": "0"},
    )
    assert response.status_code == 429
    assert response.json()["quota_type"] == "active_schedules"


@pytest.mark.asyncio
async def test_update_schedule(client: AsyncClient, schedule: dict, headers: dict):
    """Test disabling a schedule clears its next run."""
    response = await client.patch(
        f"/api/v1/scheduled-imports/{schedule['uuid']}", json={"enabled": False}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert response.json()["next_run"] is None

    response = await client.get("/api/v1/scheduled-imports", params={"enabled": True})
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_delete_schedule(client: AsyncClient, schedule: dict, headers: dict):
    """Test soft deleting a schedule."""
    response = await client.delete(f"/api/v1/scheduled-imports/{schedule['uuid']}", headers=headers)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/scheduled-imports/{schedule['uuid']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_trigger_schedule(client: AsyncClient, schedule: dict, headers: dict, static_fetcher):
    """Test a manual trigger queues the fetched file."""
    response = await client.post(f"/api/v1/scheduled-imports/{schedule['uuid']}/trigger", headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["import_file_uuid"] is not None

    response = await client.get(f"/api/v1/imports/{data['import_file_uuid']}")
    assert response.status_code == 200
    assert response.json()["file_type"] == "csv"

    response = await client.get(f"/api/v1/scheduled-imports/{schedule['uuid']}")
    history = response.json()["execution_history"]
    assert history[0]["status"] == "success"
    assert history[0]["triggered_by"] == "manual"
    assert response.json()["statistics"]["successful_runs"] == 1


@pytest.mark.asyncio
async def test_trigger_missing_schedule(client: AsyncClient):
    """Test triggering a non-existent schedule."""
    response = await client.post(f"/api/v1/scheduled-imports/{uuid.uuid4()}/trigger")
    assert response.status_code == 404


# =============================================================================
# Webhooks
# =============================================================================


@pytest.mark.asyncio
async def test_webhook_trigger(client: AsyncClient, schedule: dict, static_fetcher):
    """Test a webhook token triggers its schedule."""
    response = await client.post(f"/api/v1/webhooks/trigger/{schedule['webhook_token']}")
    assert response.status_code == 200
    assert response.json()["status"] == "success"

    response = await client.get(f"/api/v1/scheduled-imports/{schedule['uuid']}")
    assert response.json()["execution_history"][0]["triggered_by"] == "webhook"


@pytest.mark.asyncio
async def test_webhook_unknown_token(client: AsyncClient):
    """Test unknown tokens answer 404."""
    response = await client.post(f"/api/v1/webhooks/trigger/{'x' * 32}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_disabled(client: AsyncClient, schedule: dict, headers: dict):
    """Test a disabled webhook looks like an unknown token."""
    await client.patch(
        f"/api/v1/scheduled-imports/{schedule['uuid']}", json={"webhook_enabled": False}, headers=headers
    )
    response = await client.post(f"/api/v1/webhooks/trigger/{schedule['webhook_token']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_token_too_short(client: AsyncClient):
    """Test malformed tokens are rejected before lookup."""
    response = await client.post("/api/v1/webhooks/trigger/short")
    assert response.status_code == 422
