"""
Tests for identity resolution and batch duplicate classification.
"""

from __future__ import annotations

import pytest

from timetiles.schemas.enums import DuplicateStrategy, IdStrategyType, RecordClassification
from timetiles.schemas.jsonb_types import IdStrategyConfig
from timetiles.services.identity_service import (
    ExistingEvent,
    IdentityResolver,
    classify_batch,
    compute_content_hash,
    detect_id_field,
    get_by_path,
    sanitize_external_id,
)

# =============================================================================
# Value helpers
# =============================================================================


class TestHelpers:
    def test_get_by_path_nested(self):
        row = {"venue": {"address": {"city": "Riga"}}}
        assert get_by_path(row, "venue.address.city") == "Riga"
        assert get_by_path(row, "venue.missing") is None

    def test_get_by_path_prefers_literal_key(self):
        assert get_by_path({"a.b": 1, "a": {"b": 2}}, "a.b") == 1

    def test_content_hash_ignores_key_order(self):
        assert compute_content_hash({"a": 1, "b": 2}) == compute_content_hash({"b": 2, "a": 1})
        assert compute_content_hash({"a": 1}) != compute_content_hash({"a": 2})

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("abc-123", "abc-123"),
            ("  x y ", "x_y"),
            (42.0, "42"),
            ("", None),
            (None, None),
            ("///", None),
        ],
    )
    def test_sanitize_external_id(self, raw, expected):
        assert sanitize_external_id(raw) == expected


# =============================================================================
# Id column detection
# =============================================================================


class TestDetectIdField:
    def test_detects_populated_unique_column(self):
        rows = [{"id": i, "name": f"n{i}"} for i in range(10)]
        assert detect_id_field(rows, 0.9) == "id"

    def test_rejects_sparse_column(self):
        rows = [{"id": i if i < 5 else None, "name": "x"} for i in range(10)]
        assert detect_id_field(rows, 0.9) is None

    def test_repeated_values_still_identify(self):
        """Repeated ids are internal duplicates, not a reason to fall back to hashing."""
        rows = [{"id": i % 8, "name": f"n{i}"} for i in range(10)]
        assert detect_id_field(rows, 0.9) == "id"

    def test_distinct_column_wins_tie(self):
        rows = [{"id": i % 2, "event_id": f"E{i}"} for i in range(10)]
        assert detect_id_field(rows, 0.9) == "event_id"

    def test_first_pattern_wins_when_none_distinct(self):
        rows = [{"category_id": i % 2, "id": i % 3} for i in range(10)]
        assert detect_id_field(rows, 0.9) == "id"

    def test_empty_rows(self):
        assert detect_id_field([], 0.9) is None


# =============================================================================
# Resolver
# =============================================================================


class TestIdentityResolver:
    def test_external_strategy(self):
        resolver = IdentityResolver(7, IdStrategyConfig(type=IdStrategyType.EXTERNAL, external_id_path="ref"))
        identity = resolver.resolve({"ref": "A-1", "title": "x"})
        assert identity.unique_id == "7:ext:A-1"
        assert identity.source_id == "A-1"

    def test_external_strategy_without_id_is_unresolved(self):
        resolver = IdentityResolver(7, IdStrategyConfig(type=IdStrategyType.EXTERNAL, external_id_path="ref"))
        assert resolver.resolve({"title": "x"}) is None

    def test_computed_is_stable_and_field_scoped(self):
        config = IdStrategyConfig(type=IdStrategyType.COMPUTED, computed_fields=["title", "date"])
        resolver = IdentityResolver(1, config)
        a = resolver.resolve({"title": "Fair", "date": "2024-01-01", "note": "a"})
        b = resolver.resolve({"date": "2024-01-01", "title": "Fair", "note": "b"})
        assert a.unique_id == b.unique_id
        assert a.unique_id.startswith("1:comp:")
        assert a.content_hash != b.content_hash

    def test_computed_depends_on_dataset(self):
        config = IdStrategyConfig(type=IdStrategyType.COMPUTED, computed_fields=["title"])
        row = {"title": "Fair"}
        assert IdentityResolver(1, config).resolve(row).unique_id != IdentityResolver(2, config).resolve(row).unique_id

    def test_hybrid_falls_back_to_computed(self):
        config = IdStrategyConfig(type=IdStrategyType.HYBRID, external_id_path="id", computed_fields=["title"])
        resolver = IdentityResolver(1, config)
        assert resolver.resolve({"id": "5", "title": "a"}).strategy == IdStrategyType.EXTERNAL
        assert resolver.resolve({"title": "a"}).strategy == IdStrategyType.COMPUTED

    def test_explicit_path_beats_detected(self):
        config = IdStrategyConfig(type=IdStrategyType.AUTO, external_id_path="ref")
        resolver = IdentityResolver(1, config, detected_id_path="id")
        assert resolver.id_path == "ref"
        assert resolver.resolve({"id": "1", "ref": "R"}).unique_id == "1:ext:R"

    def test_auto_without_id_hashes_scalars(self):
        resolver = IdentityResolver(3, IdStrategyConfig())
        identity = resolver.resolve({"title": "x", "tags": ["a"]})
        assert identity.unique_id.startswith("3:auto:")

    def test_auto_blank_row_is_unresolved(self):
        resolver = IdentityResolver(3, IdStrategyConfig())
        assert resolver.resolve({"title": "", "tags": []}) is None


# =============================================================================
# Classification
# =============================================================================


class TestClassifyBatch:
    @pytest.fixture
    def resolver(self) -> IdentityResolver:
        return IdentityResolver(1, IdStrategyConfig(type=IdStrategyType.EXTERNAL, external_id_path="id"))

    def test_internal_duplicates_first_wins(self, resolver):
        rows = [{"id": "a"}, {"id": "b"}, {"id": "a", "x": 1}]
        result = classify_batch(rows, resolver, {}, DuplicateStrategy.SKIP)
        assert result.classifications[0] == RecordClassification.NEW
        assert result.classifications[2] == RecordClassification.INTERNAL_DUPLICATE
        assert result.analysis.internal[0].first_row == 0
        assert result.analysis.summary.unique_rows == 2
        assert result.analysis.summary.internal_duplicates == 1

    def test_existing_event_under_skip(self, resolver):
        existing = {"1:ext:a": ExistingEvent(10, "1:ext:a", "other-hash")}
        result = classify_batch([{"id": "a"}], resolver, existing, DuplicateStrategy.SKIP)
        assert result.classifications[0] == RecordClassification.EXTERNAL_DUPLICATE
        assert result.analysis.external[0].event_id == 10

    def test_changed_content_under_update_is_candidate(self, resolver):
        existing = {"1:ext:a": ExistingEvent(10, "1:ext:a", "other-hash")}
        result = classify_batch([{"id": "a"}], resolver, existing, DuplicateStrategy.UPDATE)
        assert result.classifications[0] == RecordClassification.UPDATE_CANDIDATE
        assert result.analysis.summary.update_candidates == 1

    def test_unchanged_content_under_update_is_duplicate(self, resolver):
        row = {"id": "a"}
        existing = {"1:ext:a": ExistingEvent(10, "1:ext:a", compute_content_hash(row))}
        result = classify_batch([row], resolver, existing, DuplicateStrategy.VERSION)
        assert result.classifications[0] == RecordClassification.EXTERNAL_DUPLICATE

    def test_unresolved_rows_are_reported(self, resolver):
        result = classify_batch([{"title": "no id"}], resolver, {}, DuplicateStrategy.SKIP)
        assert result.analysis.unresolved_rows == [0]
        assert 0 not in result.classifications
