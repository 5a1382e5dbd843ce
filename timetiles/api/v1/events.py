"""
Event API endpoints.

All endpoints share one filter set: catalog / dataset UUIDs, a date range,
field filters (field:value, AND across fields, OR within a field) and a
bounding box (west,south,east,north; west > east crosses the antimeridian).

- GET /events - List events (paginated)
- GET /events/clusters - Map clusters for a viewport and zoom
- GET /events/histogram - Event counts over time
- GET /events/{uuid} - Get event
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Path, Query

from timetiles.api.deps import DbSession, Filters, Pagination
from timetiles.api.utils import get_or_404
from timetiles.schemas.common import PaginatedResponse
from timetiles.schemas.event import ClusterRead, EventRead, HistogramBucket
from timetiles.services.aggregation_service import MAX_ZOOM, AggregationService

router = APIRouter()


@router.get("", response_model=PaginatedResponse[EventRead])
async def list_events(db: DbSession, pagination: Pagination, filters: Filters):
    """List events matching the filters."""
    service = AggregationService(db)
    items, total = await service.list_events(filters, pagination)
    return PaginatedResponse[EventRead](
        items=[EventRead.model_validate(item) for item in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/clusters", response_model=list[ClusterRead])
async def get_clusters(
    db: DbSession,
    filters: Filters,
    zoom: int = Query(..., ge=0, le=MAX_ZOOM, description="Map zoom level", examples=[6]),
):
    """Cluster located events in the bounding box at the given zoom."""
    return await AggregationService(db).get_clusters(filters, zoom)


@router.get("/histogram", response_model=list[HistogramBucket])
async def get_histogram(
    db: DbSession,
    filters: Filters,
    target_buckets: int | None = Query(default=None, ge=1, le=500),
    min_buckets: int | None = Query(default=None, ge=1, le=500),
    max_buckets: int | None = Query(default=None, ge=1, le=500),
):
    """Event counts in equal-width time buckets over the matching events' span."""
    return await AggregationService(db).get_histogram(filters, target_buckets, min_buckets, max_buckets)


@router.get("/{uuid}", response_model=EventRead)
async def get_event(
    db: DbSession,
    uuid: UUID = Path(..., description="The unique identifier of the event"),
):
    """Get a single event by UUID."""
    event = await get_or_404(AggregationService(db), uuid, "Event")
    return EventRead.model_validate(event)
