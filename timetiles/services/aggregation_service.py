"""
Read-only event queries: filtered listing, map clusters and time histograms.

Filters, cell binning and bucket counting all run in SQL; only one row per
cluster or bucket comes back. The pure helpers below define the same
arithmetic over in-memory points and timestamps.

Clustering
    Points are projected to Web Mercator pixel space at the requested zoom
    and binned into square cells of a zoom-dependent pixel radius. Cell
    sizes are powers of two in world units, so the grid at zoom z+1 nests
    inside the grid at zoom z and a cluster can only split as zoom grows.

Histogram
    The bucket width is chosen from a ladder of calendar-friendly widths so
    the bucket count lands in [min_buckets, max_buckets], nearest the target.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, Float, String, and_, case, cast, extract, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import AggregationSettings, get_settings
from timetiles.models.base import ensure_utc
from timetiles.models.dataset import Dataset
from timetiles.models.event import Event
from timetiles.schemas.common import PaginationParams
from timetiles.schemas.event import ClusterRead, EventFilters, HistogramBucket
from timetiles.services.base import BaseService
from timetiles.services.exceptions import ValidationError

logger = logging.getLogger(__name__)

MAX_MERCATOR_LAT = 85.05112878
MAX_ZOOM = 22

# Seconds: 1s ... 1 year
NICE_WIDTHS = (
    1, 5, 10, 15, 30,
    60, 5 * 60, 10 * 60, 15 * 60, 30 * 60,
    3600, 3 * 3600, 6 * 3600, 12 * 3600,
    86400, 2 * 86400, 7 * 86400, 14 * 86400, 30 * 86400, 90 * 86400, 365 * 86400,
)  # fmt: skip


# =============================================================================
# Clustering
# =============================================================================


@dataclass
class MapPoint:
    latitude: float
    longitude: float
    uuid: UUID | None = None
    title: str | None = None


def cluster_radius(zoom: int) -> int:
    """Pixel radius of a grid cell; coarser at low zoom."""
    if zoom <= 5:
        return 128
    if zoom <= 10:
        return 64
    return 32


def project(latitude: float, longitude: float, zoom: int, tile_size: int = 512) -> tuple[float, float]:
    """Web Mercator world pixel coordinates at `zoom`."""
    world = tile_size * (2**zoom)
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, latitude))
    x = (longitude + 180.0) / 360.0 * world
    sin_lat = math.sin(math.radians(lat))
    y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * world
    return x, y


def grid_cell_columns(latitude: Any, longitude: Any, zoom: int, tile_size: int = 512) -> tuple[Any, Any]:
    """SQL expressions for a point's grid cell; the same arithmetic as project()."""
    world = float(tile_size * (2**zoom))
    radius = float(cluster_radius(zoom))
    lat = case(
        (latitude > MAX_MERCATOR_LAT, MAX_MERCATOR_LAT),
        (latitude < -MAX_MERCATOR_LAT, -MAX_MERCATOR_LAT),
        else_=latitude,
    )
    sin_lat = func.sin(func.radians(lat, type_=Float), type_=Float)
    x = (longitude + 180.0) / 360.0 * world
    y = (0.5 - func.ln((1 + sin_lat) / (1 - sin_lat), type_=Float) / (4 * math.pi)) * world
    return (
        cast(func.floor(x / radius, type_=Float), BigInteger),
        cast(func.floor(y / radius, type_=Float), BigInteger),
    )


def cluster_id(zoom: int, cell_x: int, cell_y: int) -> str:
    return hashlib.sha256(f"{zoom}@{cell_x},{cell_y}".encode()).hexdigest()


def make_cluster(
    zoom: int,
    cell_x: int,
    cell_y: int,
    count: int,
    latitude: float,
    longitude: float,
    uuid: UUID | None = None,
    title: str | None = None,
) -> ClusterRead:
    single = count == 1
    return ClusterRead(
        cluster_id=cluster_id(zoom, cell_x, cell_y),
        latitude=latitude,
        longitude=longitude,
        count=count,
        event_uuid=uuid if single else None,
        title=title if single else None,
    )


def order_clusters(clusters: list[ClusterRead]) -> list[ClusterRead]:
    """Largest first; ties by id so the order is stable across queries."""
    return sorted(clusters, key=lambda c: (-c.count, c.cluster_id))


def cluster_points(points: Iterable[MapPoint], zoom: int, tile_size: int = 512) -> list[ClusterRead]:
    """
    Group points into grid-cell clusters.

    The centroid is the mean member position. Single-member clusters carry
    the event's uuid and title. Output is ordered by count, then id.
    """
    radius = cluster_radius(zoom)
    cells: dict[tuple[int, int], list[MapPoint]] = {}
    for point in points:
        x, y = project(point.latitude, point.longitude, zoom, tile_size)
        cells.setdefault((math.floor(x / radius), math.floor(y / radius)), []).append(point)

    return order_clusters(
        [
            make_cluster(
                zoom,
                cell_x,
                cell_y,
                len(members),
                sum(p.latitude for p in members) / len(members),
                sum(p.longitude for p in members) / len(members),
                members[0].uuid,
                members[0].title,
            )
            for (cell_x, cell_y), members in cells.items()
        ]
    )


# =============================================================================
# Histogram
# =============================================================================


def choose_bucket_width(
    span_seconds: float, target: int, min_buckets: int, max_buckets: int
) -> tuple[float, int]:
    """
    Largest ladder width whose bucket count is in range and nearest target.

    Returns (width in seconds, bucket count). Falls back to span / target
    with exactly `target` buckets when no ladder width fits.
    """
    best: tuple[int, int, int] | None = None
    for width in NICE_WIDTHS:
        count = math.floor(span_seconds / width) + 1
        if min_buckets <= count <= max_buckets:
            distance = abs(count - target)
            if best is None or distance <= best[0]:
                best = (distance, width, count)
    if best is not None:
        return float(best[1]), best[2]
    return span_seconds / target, target


def check_bucket_range(target: int, min_buckets: int, max_buckets: int) -> None:
    if not min_buckets <= target <= max_buckets:
        raise ValidationError("target_buckets must lie within [min_buckets, max_buckets]", field="target_buckets")


def histogram_buckets(
    start: datetime,
    width: float,
    bucket_total: int,
    counts: Mapping[int, int],
) -> list[HistogramBucket]:
    """
    Lay out `bucket_total` buckets of `width` seconds from `start`.

    Indexes past the last bucket (the span's end on a fallback width) fold
    into the last one; missing indexes are empty buckets.
    """
    folded = [0] * bucket_total
    for index, count in counts.items():
        folded[max(0, min(int(index), bucket_total - 1))] += count
    step = timedelta(seconds=width)
    return [
        HistogramBucket(bucket_start=start + step * i, bucket_end=start + step * (i + 1), count=count)
        for i, count in enumerate(folded)
    ]


def build_histogram(
    timestamps: Iterable[datetime],
    target: int = 30,
    min_buckets: int = 20,
    max_buckets: int = 50,
) -> list[HistogramBucket]:
    """
    Count timestamps into fixed-width buckets starting at the earliest one.

    All timestamps equal yields a single zero-width bucket.
    """
    check_bucket_range(target, min_buckets, max_buckets)
    values = sorted(ensure_utc(t) for t in timestamps if t is not None)
    if not values:
        return []
    start, end = values[0], values[-1]
    if start == end:
        return [HistogramBucket(bucket_start=start, bucket_end=end, count=len(values))]

    span = (end - start).total_seconds()
    width, bucket_total = choose_bucket_width(span, target, min_buckets, max_buckets)

    counts: dict[int, int] = {}
    for value in values:
        index = int((value - start).total_seconds() // width)
        counts[index] = counts.get(index, 0) + 1
    return histogram_buckets(start, width, bucket_total, counts)


# =============================================================================
# Queries
# =============================================================================


def filter_clauses(filters: EventFilters) -> list[Any]:
    """SQL conditions for a filter set. Soft-deleted events and datasets never match."""
    live_datasets = select(Dataset.id).where(Dataset.deleted_at.is_(None))
    if filters.catalog_ids:
        live_datasets = live_datasets.where(Dataset.catalog_id.in_(filters.catalog_ids))

    clauses: list[Any] = [
        Event.deleted_at.is_(None),
        Event.dataset_id.in_(live_datasets),
    ]
    if filters.dataset_ids:
        clauses.append(Event.dataset_id.in_(filters.dataset_ids))
    if filters.start_date:
        clauses.append(Event.event_timestamp >= filters.start_date)
    if filters.end_date:
        clauses.append(Event.event_timestamp <= filters.end_date)

    for path, values in filters.field_filters.items():
        if not values:
            continue
        keys = path.split(".")
        field = Event.data[keys[0]] if len(keys) == 1 else Event.data[tuple(keys)]
        clauses.append(field.as_string().in_(values))

    bounds = filters.bounds
    if bounds is not None:
        clauses.append(Event.latitude.between(bounds.south, bounds.north))
        if bounds.crosses_antimeridian:
            clauses.append(or_(Event.longitude >= bounds.west, Event.longitude <= bounds.east))
        else:
            clauses.append(Event.longitude.between(bounds.west, bounds.east))
    return clauses


class AggregationService(BaseService[Event, Any, Any]):
    """Event listing, clustering and histograms."""

    entity_name = "Event"

    def __init__(self, db: AsyncSession, settings: AggregationSettings | None = None):
        super().__init__(db, Event)
        self.settings = settings or get_settings().aggregation

    async def list_events(
        self, filters: EventFilters, pagination: PaginationParams
    ) -> tuple[list[Event], int]:
        query = select(Event).where(and_(*filter_clauses(filters)))
        return await self._paginate(query, pagination)

    async def get_clusters(self, filters: EventFilters, zoom: int) -> list[ClusterRead]:
        """
        Clusters for the filtered, located events in the viewport.

        Cells are computed per row in a subquery and grouped outside it, so
        the grouping keys are plain columns on every backend.
        """
        if not 0 <= zoom <= MAX_ZOOM:
            raise ValidationError(f"zoom must be between 0 and {MAX_ZOOM}", field="zoom")
        cell_x, cell_y = grid_cell_columns(Event.latitude, Event.longitude, zoom, self.settings.tile_size)
        located = (
            select(
                cell_x.label("cell_x"),
                cell_y.label("cell_y"),
                Event.latitude,
                Event.longitude,
                cast(Event.uuid, String).label("uuid"),
                Event.title,
            )
            .where(
                *filter_clauses(filters),
                Event.latitude.is_not(None),
                Event.longitude.is_not(None),
            )
            .subquery()
        )
        query = select(
            located.c.cell_x,
            located.c.cell_y,
            func.count().label("count"),
            func.avg(located.c.latitude).label("latitude"),
            func.avg(located.c.longitude).label("longitude"),
            func.min(located.c.uuid).label("uuid"),
            func.min(located.c.title).label("title"),
        ).group_by(located.c.cell_x, located.c.cell_y)

        rows = (await self.db.execute(query)).all()
        clusters = order_clusters(
            [
                make_cluster(
                    zoom,
                    int(row.cell_x),
                    int(row.cell_y),
                    row.count,
                    float(row.latitude),
                    float(row.longitude),
                    UUID(row.uuid) if row.uuid else None,
                    row.title,
                )
                for row in rows
            ]
        )
        if len(clusters) > self.settings.max_clusters:
            logger.info(f"Truncating {len(clusters)} clusters to {self.settings.max_clusters} at zoom {zoom}")
            clusters = clusters[: self.settings.max_clusters]
        return clusters

    async def get_histogram(
        self,
        filters: EventFilters,
        target_buckets: int | None = None,
        min_buckets: int | None = None,
        max_buckets: int | None = None,
    ) -> list[HistogramBucket]:
        """
        Event counts over the span of the matching events' timestamps.

        One query finds the span, a second counts rows per bucket index.
        """
        target = self.settings.target_buckets if target_buckets is None else target_buckets
        low = self.settings.min_buckets if min_buckets is None else min_buckets
        high = self.settings.max_buckets if max_buckets is None else max_buckets
        check_bucket_range(target, low, high)

        stamps = (
            select(
                Event.event_timestamp.label("stamp"),
                cast(extract("epoch", Event.event_timestamp), Float).label("epoch"),
            )
            .where(*filter_clauses(filters), Event.event_timestamp.is_not(None))
            .subquery()
        )
        span = (
            await self.db.execute(
                select(
                    func.count().label("total"),
                    func.min(stamps.c.stamp).label("start"),
                    func.max(stamps.c.stamp).label("end"),
                    func.min(stamps.c.epoch).label("first_epoch"),
                )
            )
        ).one()
        if not span.total:
            return []
        start, end = ensure_utc(span.start), ensure_utc(span.end)
        if start == end:
            return [HistogramBucket(bucket_start=start, bucket_end=end, count=span.total)]

        width, bucket_total = choose_bucket_width((end - start).total_seconds(), target, low, high)
        indexed = select(
            cast(func.floor((stamps.c.epoch - span.first_epoch) / width, type_=Float), BigInteger).label("bucket")
        ).subquery()
        counts = (
            await self.db.execute(select(indexed.c.bucket, func.count()).group_by(indexed.c.bucket))
        ).all()
        return histogram_buckets(start, width, bucket_total, {int(index): count for index, count in counts})

    async def count(self, filters: EventFilters) -> int:
        query = select(func.count(Event.id)).where(*filter_clauses(filters))
        return (await self.db.execute(query)).scalar() or 0


def get_aggregation_service(db: AsyncSession) -> AggregationService:
    """Factory function for AggregationService."""
    return AggregationService(db)
