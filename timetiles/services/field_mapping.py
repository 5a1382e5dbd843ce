"""
Language-aware detection of standard event fields.

Finds title, description, timestamp, location name and address columns by
header patterns (English and German), combines them with coordinate column
detection and applies dataset-level overrides.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from typing import Any

from timetiles.schemas.jsonb_types import (
    DetectedFieldMappings,
    FieldMappingOverrides,
    GeoDetection,
    GeoFieldMapping,
)
from timetiles.services.coordinate_service import detect_geo_columns

_FIELD_PATTERNS: dict[str, dict[str, list[str]]] = {
    "title": {
        "en": [r"^title$", r"^name$", r"^event.*name$", r"^event.*title$", r"^label$", r"^event$"],
        "de": [r"^titel$", r"^name$", r"^bezeichnung$", r"^veranstaltung.*name$", r"^veranstaltung$"],
    },
    "description": {
        "en": [r"^description$", r"^details$", r"^summary$", r"^notes$", r"^text$", r"^content$"],
        "de": [r"^beschreibung$", r"^details$", r"^zusammenfassung$", r"^notizen$", r"^inhalt$"],
    },
    "timestamp": {
        "en": [
            r"^date$", r"^timestamp$", r"^datetime$", r"^date.*time$", r"^event.*date$",
            r"^start.*date$", r"^created.*at$", r"^time$", r"^when$",
        ],
        "de": [r"^datum$", r"^zeitstempel$", r"^veranstaltung.*datum$", r"^zeit$", r"^wann$"],
    },
    "location_name": {
        "en": [r"^venue$", r"^venue.*name$", r"^place$", r"^place.*name$", r"^location.*name$", r"^site$"],
        "de": [r"^veranstaltungsort$", r"^ort$", r"^spielstätte$", r"^standort$"],
    },
    "address": {
        "en": [
            r"^address$", r"^addr$", r"^full.*address$", r"^event.*address$", r"^postal.*address$",
            r"^street$", r"^location$", r"^city$", r"^town$",
        ],
        "de": [r"^adresse$", r"^anschrift$", r"^postadresse$", r"^straße$", r"^strasse$", r"^stadt$"],
    },
}

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d.%m.%Y",
    "%d.%m.%Y %H:%M",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
)


def _patterns(kind: str, language: str) -> list[re.Pattern]:
    by_language = _FIELD_PATTERNS[kind]
    sources = by_language.get(language[:2].lower(), []) + by_language["en"]
    return [re.compile(p, re.IGNORECASE) for p in dict.fromkeys(sources)]


def _find(headers: Sequence[str], kind: str, language: str, exclude: set[str]) -> str | None:
    for pattern in _patterns(kind, language):
        for header in headers:
            if header not in exclude and pattern.match(header.strip()):
                return header
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse common timestamp notations into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, (int, float)):
        # Bare years are common in historical datasets
        if 1000 <= value <= 9999 and float(value).is_integer():
            return datetime(int(value), 1, 1, tzinfo=UTC)
        return None

    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _mostly_timestamps(rows: Sequence[Mapping[str, Any]], column: str) -> bool:
    values = [row.get(column) for row in rows[:100] if row.get(column) not in (None, "")]
    if not values:
        return False
    parsed = sum(1 for v in values if parse_timestamp(v) is not None)
    return parsed / len(values) >= 0.7


def detect_field_mappings(
    headers: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
    language: str = "en",
    overrides: FieldMappingOverrides | None = None,
    geo_overrides: GeoFieldMapping | None = None,
) -> DetectedFieldMappings:
    """Detect standard fields; dataset overrides always win."""
    overrides = overrides or FieldMappingOverrides()
    geo_overrides = geo_overrides or GeoFieldMapping()

    geo = _resolve_geo(headers, rows, language, geo_overrides)
    used = {
        p
        for p in (geo.latitude_path, geo.longitude_path, geo.combined_path, geo.address_path)
        if p
    }

    timestamp = overrides.timestamp_path
    if timestamp is None:
        candidate = _find(headers, "timestamp", language, used)
        if candidate and _mostly_timestamps(rows, candidate):
            timestamp = candidate

    title = overrides.title_path or _find(headers, "title", language, used)
    description = overrides.description_path or _find(
        headers, "description", language, used | {title} if title else used
    )

    return DetectedFieldMappings(
        title_path=title,
        description_path=description,
        timestamp_path=timestamp,
        geo=geo,
    )


def _resolve_geo(
    headers: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
    language: str,
    geo_overrides: GeoFieldMapping,
) -> GeoDetection:
    location_name = geo_overrides.location_name_path or _find(headers, "location_name", language, set())

    if geo_overrides.latitude_path and geo_overrides.longitude_path:
        return GeoDetection(
            type="separate",
            latitude_path=geo_overrides.latitude_path,
            longitude_path=geo_overrides.longitude_path,
            address_path=geo_overrides.address_path,
            location_name_path=location_name,
            confidence=1.0,
            detection_method="manual",
        )
    if geo_overrides.combined_path:
        return GeoDetection(
            type="combined",
            combined_path=geo_overrides.combined_path,
            combined_format=geo_overrides.combined_format,
            address_path=geo_overrides.address_path,
            location_name_path=location_name,
            confidence=1.0,
            detection_method="manual",
        )

    detected = detect_geo_columns(headers, rows)
    address = geo_overrides.address_path or _find(
        headers,
        "address",
        language,
        {p for p in (detected.combined_path, detected.latitude_path, detected.longitude_path) if p},
    )
    detected.address_path = address
    detected.location_name_path = location_name
    if detected.type == "none" and address:
        detected.type = "address"
        detected.detection_method = "manual" if geo_overrides.address_path else "pattern"
        detected.confidence = 1.0 if geo_overrides.address_path else 0.8
    return detected
