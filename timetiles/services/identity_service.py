"""
Identity and deduplication resolver.

Derives a stable unique_id and content_hash for each record and classifies
a batch into new / internal duplicate / external duplicate / update candidate.

Identity strategies:
- external: `{dataset}:ext:{sanitized id}` from a dot path
- computed: `{dataset}:comp:{hash16}` over a configured field list
- auto:     detected id-like column, else `{dataset}:auto:{hash16}` over scalar fields
- hybrid:   external when the row has an id, computed otherwise

An explicit `external_id_path` always takes precedence over auto-detection.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import ImportSettings, get_settings
from timetiles.models.event import Event
from timetiles.schemas.enums import DuplicateStrategy, IdStrategyType, RecordClassification
from timetiles.schemas.jsonb_types import (
    DuplicateAnalysis,
    DuplicateRecord,
    DuplicateSummary,
    IdStrategyConfig,
)

logger = logging.getLogger(__name__)

MAX_EXTERNAL_ID_LENGTH = 255
_UNSAFE_ID_CHARS = re.compile(r"[^\w\-.:]")
_ID_COLUMN_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^id$",
        r"^uuid$",
        r"^guid$",
        r"^key$",
        r"^identifier$",
        r"^external[_\s-]?id$",
        r"^reference$",
        r"^ref$",
        r"^.+[_\s-]id$",
        r"^.+Id$",
    )
]


# =============================================================================
# Value helpers
# =============================================================================


def get_by_path(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot path ("venue.address.city") against nested dicts."""
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, str() for non-JSON types."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def compute_content_hash(data: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of the row."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def sanitize_external_id(value: Any) -> str | None:
    """Stringify and clean an external id; None if nothing usable remains."""
    if _is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    cleaned = _UNSAFE_ID_CHARS.sub("_", text)[:MAX_EXTERNAL_ID_LENGTH]
    if not cleaned or not cleaned.strip("_"):
        return None
    return cleaned


def _scalar_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        k: v
        for k, v in sorted(data.items())
        if not _is_blank(v) and not isinstance(v, (dict, list))
    }


def _hash_fields(dataset_id: int, values: Mapping[str, Any]) -> str:
    parts = [f"{name}:{canonical_json(values[name])}" for name in sorted(values)]
    payload = f"{dataset_id}:" + "|".join(parts)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Identity
# =============================================================================


@dataclass
class RecordIdentity:
    """Stable identity of one record."""

    unique_id: str
    content_hash: str
    source_id: str | None = None
    strategy: IdStrategyType = IdStrategyType.AUTO


def detect_id_field(
    rows: Sequence[Mapping[str, Any]],
    threshold: float,
) -> str | None:
    """
    Find an id-like column populated in at least `threshold` of rows.

    Repeated values do not disqualify a column: they are the batch's
    internal duplicates. When several columns qualify, one whose values
    are all distinct wins; otherwise the first by name pattern.
    """
    if not rows:
        return None

    headers: list[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)

    candidates: list[tuple[str, bool]] = []
    for pattern in _ID_COLUMN_PATTERNS:
        for header in headers:
            if not pattern.match(header.strip()) or any(header == c for c, _ in candidates):
                continue
            values = [sanitize_external_id(row.get(header)) for row in rows]
            populated = [v for v in values if v is not None]
            if len(populated) / len(rows) < threshold:
                continue
            candidates.append((header, len(set(populated)) == len(populated)))

    if not candidates:
        return None
    header = next((c for c, distinct in candidates if distinct), candidates[0][0])
    logger.debug(f"Detected id column '{header}' among {len(candidates)} candidate(s)")
    return header


class IdentityResolver:
    """Computes identities for one dataset's strategy."""

    def __init__(
        self,
        dataset_id: int,
        config: IdStrategyConfig,
        detected_id_path: str | None = None,
    ):
        self.dataset_id = dataset_id
        self.config = config
        self.detected_id_path = detected_id_path

    @property
    def id_path(self) -> str | None:
        """Explicit path wins over the auto-detected one."""
        return self.config.external_id_path or self.detected_id_path

    def resolve(self, row: Mapping[str, Any]) -> RecordIdentity | None:
        """Identity for one row, or None when no stable identity can be derived."""
        content_hash = compute_content_hash(row)
        strategy = self.config.type

        if strategy == IdStrategyType.EXTERNAL:
            return self._external(row, content_hash)

        if strategy == IdStrategyType.COMPUTED:
            return self._computed(row, content_hash)

        if strategy == IdStrategyType.HYBRID:
            return self._external(row, content_hash) or self._computed(row, content_hash)

        # auto
        if self.id_path:
            identity = self._external(row, content_hash)
            if identity is not None:
                return identity
        scalars = _scalar_fields(row)
        if not scalars:
            return None
        return RecordIdentity(
            unique_id=f"{self.dataset_id}:auto:{_hash_fields(self.dataset_id, scalars)}",
            content_hash=content_hash,
            strategy=IdStrategyType.AUTO,
        )

    def _external(self, row: Mapping[str, Any], content_hash: str) -> RecordIdentity | None:
        if not self.id_path:
            return None
        source_id = sanitize_external_id(get_by_path(row, self.id_path))
        if source_id is None:
            return None
        return RecordIdentity(
            unique_id=f"{self.dataset_id}:ext:{source_id}",
            content_hash=content_hash,
            source_id=source_id,
            strategy=IdStrategyType.EXTERNAL,
        )

    def _computed(self, row: Mapping[str, Any], content_hash: str) -> RecordIdentity | None:
        fields = self.config.computed_fields
        if fields:
            values = {f: get_by_path(row, f) for f in fields}
            values = {k: v for k, v in values.items() if not _is_blank(v)}
        else:
            values = _scalar_fields(row)
        if not values:
            return None
        return RecordIdentity(
            unique_id=f"{self.dataset_id}:comp:{_hash_fields(self.dataset_id, values)}",
            content_hash=content_hash,
            strategy=IdStrategyType.COMPUTED,
        )


# =============================================================================
# Batch classification
# =============================================================================


@dataclass
class ExistingEvent:
    """What we need to know about an already-materialized event."""

    id: int
    unique_id: str
    content_hash: str


@dataclass
class BatchClassification:
    """Per-row classification plus the serializable analysis."""

    classifications: dict[int, RecordClassification] = field(default_factory=dict)
    identities: dict[int, RecordIdentity] = field(default_factory=dict)
    analysis: DuplicateAnalysis = field(default_factory=DuplicateAnalysis)


def classify_batch(
    rows: Sequence[Mapping[str, Any]],
    resolver: IdentityResolver,
    existing: Mapping[str, ExistingEvent],
    strategy: DuplicateStrategy,
) -> BatchClassification:
    """
    Classify rows against each other and against existing events.

    The first occurrence of an identity in the batch wins; later rows are
    internal duplicates. A row matching an existing event is an update
    candidate when the strategy is update/version and the content changed,
    otherwise an external duplicate.
    """
    result = BatchClassification()
    analysis = DuplicateAnalysis(strategy=strategy, id_path=resolver.id_path)
    first_seen: dict[str, int] = {}

    for index, row in enumerate(rows):
        identity = resolver.resolve(row)
        if identity is None:
            analysis.unresolved_rows.append(index)
            continue
        result.identities[index] = identity

        if identity.unique_id in first_seen:
            result.classifications[index] = RecordClassification.INTERNAL_DUPLICATE
            analysis.internal.append(
                DuplicateRecord(
                    row=index,
                    unique_id=identity.unique_id,
                    first_row=first_seen[identity.unique_id],
                )
            )
            continue
        first_seen[identity.unique_id] = index

        match = existing.get(identity.unique_id)
        if match is None:
            result.classifications[index] = RecordClassification.NEW
            continue

        record = DuplicateRecord(row=index, unique_id=identity.unique_id, event_id=match.id)
        changed = match.content_hash != identity.content_hash
        if strategy != DuplicateStrategy.SKIP and changed:
            result.classifications[index] = RecordClassification.UPDATE_CANDIDATE
            analysis.update_candidates.append(record)
        else:
            result.classifications[index] = RecordClassification.EXTERNAL_DUPLICATE
            analysis.external.append(record)

    analysis.summary = DuplicateSummary(
        total_rows=len(rows),
        unique_rows=sum(
            1 for c in result.classifications.values() if c == RecordClassification.NEW
        ),
        internal_duplicates=len(analysis.internal),
        external_duplicates=len(analysis.external),
        update_candidates=len(analysis.update_candidates),
        unresolved=len(analysis.unresolved_rows),
    )
    result.analysis = analysis
    return result


class IdentityService:
    """Database side of duplicate detection."""

    def __init__(self, db: AsyncSession, settings: ImportSettings | None = None):
        self.db = db
        self.settings = settings or get_settings().imports

    async def find_existing(
        self,
        dataset_id: int,
        unique_ids: Iterable[str],
    ) -> dict[str, ExistingEvent]:
        """Look up existing events by unique_id in fixed-size chunks."""
        ids = list(dict.fromkeys(unique_ids))
        chunk_size = self.settings.duplicate_check_chunk_size
        found: dict[str, ExistingEvent] = {}

        for start in range(0, len(ids), chunk_size):
            chunk = ids[start : start + chunk_size]
            stmt = select(Event.id, Event.unique_id, Event.content_hash).where(
                Event.dataset_id == dataset_id,
                Event.unique_id.in_(chunk),
                Event.deleted_at.is_(None),
            )
            result = await self.db.execute(stmt)
            for event_id, unique_id, content_hash in result.all():
                found[unique_id] = ExistingEvent(event_id, unique_id, content_hash)

        return found

    async def analyze(
        self,
        dataset_id: int,
        rows: Sequence[Mapping[str, Any]],
        config: IdStrategyConfig,
    ) -> BatchClassification:
        """Detect the id column, resolve identities and classify the batch."""
        detected = None
        if config.type in (IdStrategyType.AUTO, IdStrategyType.HYBRID) and not config.external_id_path:
            detected = detect_id_field(rows, self.settings.auto_id_threshold)
        resolver = IdentityResolver(dataset_id, config, detected)

        candidate_ids = [
            identity.unique_id
            for identity in (resolver.resolve(row) for row in rows)
            if identity is not None
        ]
        existing = await self.find_existing(dataset_id, candidate_ids)
        return classify_batch(rows, resolver, existing, config.duplicate_strategy)


def get_identity_service(db: AsyncSession) -> IdentityService:
    """Factory function for IdentityService."""
    return IdentityService(db)
