"""
Tests for geocoding provider, lookup and cache API endpoints.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient

from timetiles.models.base import utc_now
from timetiles.models.location_cache import LocationCache


@pytest.mark.asyncio
async def test_create_provider(client: AsyncClient, headers: dict):
    """Test registering a keyless provider."""
    response = await client.post(
        "/api/v1/geocoding/providers",
        json={"name": "osm", "provider_type": "nominatim", "priority": 5, "config": {"email": "ops@example.org"}},
        headers=headers,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "osm"
    assert data["priority"] == 5
    assert data["has_api_key"] is False
    assert data["total_requests"] == 0
    assert "config" not in data


@pytest.mark.asyncio
async def test_create_provider_requires_key(client: AsyncClient):
    """Test an enabled Google provider without an API key is refused."""
    response = await client.post(
        "/api/v1/geocoding/providers", json={"name": "google", "provider_type": "google"}
    )
    assert response.status_code == 400
    assert response.json()["field"] == "config.api_key"


@pytest.mark.asyncio
async def test_create_provider_with_key(client: AsyncClient):
    """Test the API key is stored but only its presence is reported."""
    response = await client.post(
        "/api/v1/geocoding/providers",
        json={"name": "opencage", "provider_type": "opencage", "config": {"api_key": "secret"}},
    )
    assert response.status_code == 201
    assert response.json()["has_api_key"] is True
    assert "secret" not in response.text


@pytest.mark.asyncio
async def test_create_provider_duplicate_name(client: AsyncClient, fake_geocoder):
    """Test provider names are unique."""
    response = await client.post(
        "/api/v1/geocoding/providers", json={"name": "fake", "provider_type": "nominatim"}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_and_delete_provider(client: AsyncClient, headers: dict):
    """Test disabling and then removing a provider."""
    response = await client.post(
        "/api/v1/geocoding/providers", json={"name": "osm", "provider_type": "nominatim"}
    )
    provider_uuid = response.json()["uuid"]

    response = await client.patch(f"/api/v1/geocoding/providers/{provider_uuid}", json={"enabled": False})
    assert response.status_code == 200
    assert response.json()["enabled"] is False

    response = await client.get("/api/v1/geocoding/providers", params={"enabled": True})
    assert response.json()["total"] == 0

    response = await client.delete(f"/api/v1/geocoding/providers/{provider_uuid}", headers=headers)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/geocoding/providers/{provider_uuid}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_provider_not_found(client: AsyncClient):
    """Test getting a non-existent provider."""
    response = await client.get(f"/api/v1/geocoding/providers/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_geocode_then_cache(client: AsyncClient, fake_geocoder):
    """Test a second lookup of the same address is served from the cache."""
    response = await client.post("/api/v1/geocoding/geocode", json={"address": "Riga"})
    assert response.status_code == 200
    data = response.json()
    assert data["latitude"] == pytest.approx(56.9496)
    assert data["provider"] == "fake"
    assert data["from_cache"] is False

    response = await client.post("/api/v1/geocoding/geocode", json={"address": "  RIGA "})
    assert response.json()["from_cache"] is True
    assert fake_geocoder.calls == ["Riga"]

    response = await client.get("/api/v1/geocoding/cache")
    assert response.json() == {"entries": 1, "total_hits": 2, "by_provider": {"fake": 1}}


@pytest.mark.asyncio
async def test_geocode_not_found(client: AsyncClient, fake_geocoder):
    """Test an unknown address answers with an error instead of failing."""
    response = await client.post("/api/v1/geocoding/geocode", json={"address": "Atlantis"})
    assert response.status_code == 200
    assert response.json()["latitude"] is None
    assert response.json()["error"]


@pytest.mark.asyncio
async def test_geocode_without_providers(client: AsyncClient):
    """Test a lookup with no enabled provider is a configuration error."""
    response = await client.post("/api/v1/geocoding/geocode", json={"address": "Riga"})
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_purge_expired_cache(client: AsyncClient, db_session):
    """Test only entries past the TTL are purged."""
    stale = LocationCache(
        original_address="Old Town",
        normalized_address="old town",
        latitude=1.0,
        longitude=2.0,
        provider="fake",
    )
    stale.created_at = utc_now() - timedelta(days=10_000)
    fresh = LocationCache(
        original_address="New Town",
        normalized_address="new town",
        latitude=3.0,
        longitude=4.0,
        provider="fake",
    )
    db_session.add_all([stale, fresh])
    await db_session.commit()

    response = await client.delete("/api/v1/geocoding/cache/expired")
    assert response.status_code == 200
    assert response.json() == {"removed": 1}

    response = await client.get("/api/v1/geocoding/cache")
    assert response.json()["entries"] == 1
