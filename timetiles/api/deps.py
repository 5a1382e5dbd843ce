"""
API dependencies for FastAPI route handlers.

Provides:
- Database session dependency
- Pagination parameter dependency
- Current actor dependency (identity comes from the upstream auth layer)
- Event filter dependency shared by listing and aggregation endpoints
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Query
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import get_settings
from timetiles.database import get_db
from timetiles.models.catalog import Catalog
from timetiles.models.dataset import Dataset
from timetiles.schemas.common import Actor, PaginationParams
from timetiles.schemas.event import BoundingBox, EventFilters
from timetiles.services.exceptions import ValidationError

__all__ = [
    "DbSession",
    "Pagination",
    "CurrentActor",
    "Filters",
    "get_pagination",
    "get_current_actor",
    "get_event_filters",
]


# Type alias for database session dependency
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(
        default=20,
        ge=1,
        le=100,
        description="Items per page (max 100)",
    ),
) -> PaginationParams:
    """Dependency for pagination parameters."""
    return PaginationParams(page=page, page_size=page_size)


# Type alias for pagination dependency
Pagination = Annotated[PaginationParams, Depends(get_pagination)]


def get_current_actor(
    x_actor_id: str | None = Header(default=None, description="Opaque actor identifier"),
    x_actor_trust_level: int | None = Header(
        default=None,
        ge=0,
        le=5,
        description="Quota trust level (0-5)",
    ),
) -> Actor:
    """Actor supplied by the upstream auth layer; anonymous when absent."""
    trust_level = x_actor_trust_level
    if trust_level is None:
        trust_level = get_settings().quotas.default_trust_level
    return Actor(id=x_actor_id or "anonymous", trust_level=trust_level)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


def _parse_field_filters(values: list[str]) -> dict[str, list[str]]:
    """`field:value` pairs; repeated fields are OR-ed together."""
    parsed: dict[str, list[str]] = {}
    for item in values:
        field, sep, value = item.partition(":")
        if not sep or not field:
            raise ValidationError(f"Invalid field filter '{item}', expected field:value", field="field")
        parsed.setdefault(field, []).append(value)
    return parsed


async def get_event_filters(
    db: DbSession,
    catalog: list[UUID] = Query(default=[], description="Catalog UUIDs"),
    dataset: list[UUID] = Query(default=[], description="Dataset UUIDs"),
    start_date: datetime | None = Query(default=None, description="Earliest event time"),
    end_date: datetime | None = Query(default=None, description="Latest event time"),
    field: list[str] = Query(
        default=[],
        description="Field filters as field:value; same field OR-ed, different fields AND-ed",
        examples=["category:protest"],
    ),
    bbox: str | None = Query(
        default=None,
        description="Bounding box west,south,east,north",
        examples=["-10.5,35.0,30.2,60.1"],
    ),
) -> EventFilters:
    """Build an EventFilters from query parameters, resolving public UUIDs."""
    bounds = None
    if bbox:
        try:
            west, south, east, north = (float(part) for part in bbox.split(","))
            bounds = BoundingBox(west=west, south=south, east=east, north=north)
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid bounding box '{bbox}'", field="bbox") from e

    catalog_ids: list[int] = []
    if catalog:
        result = await db.execute(select(Catalog.id).where(Catalog.uuid.in_(catalog)))
        catalog_ids = list(result.scalars().all()) or [-1]
    dataset_ids: list[int] = []
    if dataset:
        result = await db.execute(select(Dataset.id).where(Dataset.uuid.in_(dataset)))
        dataset_ids = list(result.scalars().all()) or [-1]

    return EventFilters(
        catalog_ids=catalog_ids,
        dataset_ids=dataset_ids,
        start_date=start_date,
        end_date=end_date,
        field_filters=_parse_field_filters(field),
        bounds=bounds,
    )


Filters = Annotated[EventFilters, Depends(get_event_filters)]
