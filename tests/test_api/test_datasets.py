"""
Tests for Dataset API endpoints.
"""

import uuid

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_list_datasets_empty(client: AsyncClient):
    """Test listing datasets when none exist."""
    response = await client.get("/api/v1/datasets")
    assert response.status_code == 200

    data = response.json()
    assert data["items"] == []
    assert data["total"] == 0
    assert data["page"] == 1


@pytest.mark.asyncio
async def test_create_dataset(client: AsyncClient, catalog, headers: dict):
    """Test creating a dataset with an identity strategy."""
    payload = {
        "catalog_uuid": str(catalog.uuid),
        "name": "Street Protests",
        "description": "Protests reported by local media",
        "id_strategy": {"type": "external", "external_id_path": "report.id", "duplicate_strategy": "update"},
        "schema_config": {"strict": True},
    }

    response = await client.post("/api/v1/datasets", json=payload, headers=headers)
    assert response.status_code == 201

    data = response.json()
    assert data["slug"] == "street-protests"
    assert data["catalog_uuid"] == str(catalog.uuid)
    assert data["event_count"] == 0
    assert data["id_strategy"]["external_id_path"] == "report.id"
    assert data["id_strategy"]["duplicate_strategy"] == "update"
    assert data["schema_config"]["strict"] is True
    assert data["schema_config"]["auto_grow"] is True


@pytest.mark.asyncio
async def test_create_dataset_unknown_catalog(client: AsyncClient):
    """Test creating a dataset in a catalog that does not exist."""
    response = await client.post(
        "/api/v1/datasets",
        json={"catalog_uuid": str(uuid.uuid4()), "name": "Orphan"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_create_dataset_duplicate_slug(client: AsyncClient, catalog, dataset):
    """Test creating a dataset with a taken slug fails."""
    response = await client.post(
        "/api/v1/datasets",
        json={"catalog_uuid": str(catalog.uuid), "name": "Again", "slug": dataset.slug},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_list_datasets_by_catalog(client: AsyncClient, catalog, dataset):
    """Test filtering datasets by catalog and search text."""
    response = await client.get("/api/v1/datasets", params={"catalog": str(catalog.uuid)})
    assert response.json()["total"] == 1
    assert response.json()["items"][0]["catalog_uuid"] == str(catalog.uuid)

    response = await client.get("/api/v1/datasets", params={"catalog": str(uuid.uuid4())})
    assert response.status_code == 404

    response = await client.get("/api/v1/datasets", params={"search": "concert"})
    assert response.json()["total"] == 1

    response = await client.get("/api/v1/datasets", params={"search": "weather"})
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_update_dataset_policy(client: AsyncClient, dataset):
    """Test changing the schema policy of a dataset."""
    response = await client.patch(
        f"/api/v1/datasets/{dataset.uuid}",
        json={"schema_config": {"locked": True}},
    )
    assert response.status_code == 200
    assert response.json()["schema_config"]["locked"] is True


@pytest.mark.asyncio
async def test_delete_dataset(client: AsyncClient, dataset, headers: dict):
    """Test soft deleting a dataset."""
    response = await client.delete(f"/api/v1/datasets/{dataset.uuid}", headers=headers)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/datasets/{dataset.uuid}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_schema_versions_empty(client: AsyncClient, dataset):
    """Test a dataset without imports has no schema versions."""
    response = await client.get(f"/api/v1/datasets/{dataset.uuid}/schema-versions")
    assert response.status_code == 200
    assert response.json()["items"] == []
