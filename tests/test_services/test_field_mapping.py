"""
Tests for standard field detection and timestamp parsing.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from timetiles.schemas.jsonb_types import FieldMappingOverrides, GeoFieldMapping
from timetiles.services.field_mapping import detect_field_mappings, parse_timestamp


class TestParseTimestamp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2024-03-01", datetime(2024, 3, 1, tzinfo=UTC)),
            ("2024-03-01T10:30:00Z", datetime(2024, 3, 1, 10, 30, tzinfo=UTC)),
            ("01.02.2024", datetime(2024, 2, 1, tzinfo=UTC)),
            (1999, datetime(1999, 1, 1, tzinfo=UTC)),
            (date(2020, 5, 4), datetime(2020, 5, 4, tzinfo=UTC)),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_timestamp(value) == expected

    @pytest.mark.parametrize("value", [None, "", "not a date", 12, True])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None

    def test_keeps_offset(self):
        parsed = parse_timestamp("2024-03-01T10:00:00+02:00")
        assert parsed.astimezone(UTC).hour == 8


class TestDetectFieldMappings:
    def test_english_headers(self):
        headers = ["title", "description", "date", "address"]
        rows = [{"title": "A", "description": "d", "date": "2024-01-01", "address": "Riga"}]
        mappings = detect_field_mappings(headers, rows)
        assert mappings.title_path == "title"
        assert mappings.description_path == "description"
        assert mappings.timestamp_path == "date"
        assert mappings.geo.type == "address"
        assert mappings.geo.address_path == "address"

    def test_german_headers(self):
        headers = ["Titel", "Beschreibung", "Datum", "Adresse"]
        rows = [{"Titel": "A", "Beschreibung": "d", "Datum": "01.02.2024", "Adresse": "Berlin"}]
        mappings = detect_field_mappings(headers, rows, language="de")
        assert mappings.title_path == "Titel"
        assert mappings.description_path == "Beschreibung"
        assert mappings.timestamp_path == "Datum"
        assert mappings.geo.address_path == "Adresse"

    def test_timestamp_column_must_hold_dates(self):
        rows = [{"date": "soon"}, {"date": "later"}]
        assert detect_field_mappings(["date"], rows).timestamp_path is None

    def test_coordinates_take_precedence_over_address(self):
        headers = ["name", "lat", "lon", "city"]
        rows = [{"name": "x", "lat": 56.95, "lon": 24.1, "city": "Riga"} for _ in range(3)]
        mappings = detect_field_mappings(headers, rows)
        assert mappings.geo.type == "separate"
        assert mappings.geo.address_path == "city"
        assert mappings.title_path == "name"

    def test_overrides_win(self):
        headers = ["title", "headline", "when", "y", "x"]
        rows = [{"title": "a", "headline": "b", "when": "2024-01-01", "y": 1.5, "x": 2.5}]
        mappings = detect_field_mappings(
            headers,
            rows,
            overrides=FieldMappingOverrides(title_path="headline"),
            geo_overrides=GeoFieldMapping(latitude_path="y", longitude_path="x"),
        )
        assert mappings.title_path == "headline"
        assert mappings.geo.detection_method == "manual"
        assert mappings.geo.latitude_path == "y"
