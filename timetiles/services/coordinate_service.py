"""
Coordinate parsing, validation and geo-column detection.

Pure functions, no I/O. Handles:
- Decimal degrees, direction suffix/prefix ("40.7 N"), DMS (40°42'46"N)
  and degrees-decimal-minutes (40°42.767'N)
- Combined columns: "lat,lon", "lat lon", "[lat, lon]" and GeoJSON Points
- Validation into valid / out_of_range / suspicious_zero / swapped_axis / invalid
- Detection of latitude/longitude columns from headers and sample values
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from timetiles.schemas.enums import ValidationStatus
from timetiles.schemas.jsonb_types import GeoDetection

# Fraction of sampled pairs that must agree before a detection is trusted
DETECTION_MIN_VALID_RATIO = 0.7
SWAP_DETECTION_RATIO = 0.7
SAMPLE_SIZE = 100

LATITUDE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^lat(itude)?$",
        r"^lat[_\s-]?deg(rees)?$",
        r"^y[_\s-]?coord(inate)?$",
        r"^location[_\s-]?lat(itude)?$",
        r"^geo[_\s-]?lat(itude)?$",
        r"^decimal[_\s-]?lat(itude)?$",
        r"^latitude[_\s-]?decimal$",
        r"^wgs84[_\s-]?lat(itude)?$",
        r"^breite(ngrad)?$",
    )
]
LONGITUDE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^lon(g|gitude)?$",
        r"^lng$",
        r"^lon[_\s-]?deg(rees)?$",
        r"^long[_\s-]?deg(rees)?$",
        r"^x[_\s-]?coord(inate)?$",
        r"^location[_\s-]?lon(g|gitude)?$",
        r"^geo[_\s-]?lon(g|gitude)?$",
        r"^decimal[_\s-]?lon(g|gitude)?$",
        r"^longitude[_\s-]?decimal$",
        r"^wgs84[_\s-]?lon(g|gitude)?$",
        r"^länge(ngrad)?$",
    )
]
COMBINED_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^coord(inate)?s$",
        r"^lat[_\s-]?lon(g)?$",
        r"^location$",
        r"^geo[_\s-]?location$",
        r"^position$",
        r"^point$",
        r"^geometry$",
        r"^geo$",
    )
]

_NUMBER = r"-?\d{1,3}(?:\.\d+)?"
_DMS_RE = re.compile(
    r"^(-?\d{1,3})\s*[°\s]\s*(\d{1,2})\s*['′\s]\s*(\d{1,2}(?:\.\d+)?)\s*[\"″]?\s*([NSEW])?$",
    re.IGNORECASE,
)
_DDM_RE = re.compile(r"^(-?\d{1,3})\s*[°\s]\s*(\d{1,2}(?:\.\d+)?)\s*['′]\s*([NSEW])?$", re.IGNORECASE)
_SUFFIX_RE = re.compile(r"^(-?\d{1,3}(?:\.\d+)?)\s*°?\s*([NSEW])$", re.IGNORECASE)
_PREFIX_RE = re.compile(r"^([NSEW])\s*(\d{1,3}(?:\.\d+)?)\s*°?$", re.IGNORECASE)
_DECIMAL_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
_COMMA_PAIR_RE = re.compile(rf"^\s*\[?\(?\s*({_NUMBER})\s*,\s*({_NUMBER})\s*\)?\]?\s*$")
_SPACE_PAIR_RE = re.compile(rf"^\s*({_NUMBER})\s+({_NUMBER})\s*$")


# =============================================================================
# Parsing
# =============================================================================


def _apply_direction(value: float, direction: str | None) -> float:
    if direction and direction.upper() in ("S", "W"):
        return -abs(value)
    return value


def parse_coordinate(value: Any) -> float | None:
    """Parse a single coordinate component in any supported notation."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number

    text = str(value).strip()
    if not text:
        return None

    if _DECIMAL_RE.match(text):
        return float(text)

    if match := _DMS_RE.match(text):
        degrees, minutes, seconds, direction = match.groups()
        deg = float(degrees)
        decimal = abs(deg) + float(minutes) / 60 + float(seconds) / 3600
        decimal = -decimal if deg < 0 or degrees.startswith("-") else decimal
        return _apply_direction(decimal, direction)

    if match := _DDM_RE.match(text):
        degrees, minutes, direction = match.groups()
        deg = float(degrees)
        decimal = abs(deg) + float(minutes) / 60
        decimal = -decimal if degrees.startswith("-") else decimal
        return _apply_direction(decimal, direction)

    if match := _SUFFIX_RE.match(text):
        return _apply_direction(float(match.group(1)), match.group(2))

    if match := _PREFIX_RE.match(text):
        return _apply_direction(float(match.group(2)), match.group(1))

    return None


def _parse_geojson(value: Any) -> tuple[float, float] | None:
    if isinstance(value, str):
        text = value.strip()
        if not text.startswith("{"):
            return None
        try:
            value = json.loads(text)
        except ValueError:
            return None
    if not isinstance(value, Mapping):
        return None
    if value.get("type") == "Feature":
        value = value.get("geometry") or {}
    if value.get("type") != "Point":
        return None
    coords = value.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    lon, lat = parse_coordinate(coords[0]), parse_coordinate(coords[1])
    if lat is None or lon is None:
        return None
    # GeoJSON order is [lon, lat]
    return lat, lon


def parse_combined(value: Any, fmt: str = "auto") -> tuple[float, float] | None:
    """
    Parse a combined location value into (lat, lon).

    fmt is one of "auto", "comma", "space", "geojson".
    """
    if value is None:
        return None

    if fmt in ("auto", "geojson"):
        parsed = _parse_geojson(value)
        if parsed or fmt == "geojson":
            return parsed

    if isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lon = parse_coordinate(value[0]), parse_coordinate(value[1])
        return (lat, lon) if lat is not None and lon is not None else None

    text = str(value).strip()
    if fmt in ("auto", "comma") and (match := _COMMA_PAIR_RE.match(text)):
        return float(match.group(1)), float(match.group(2))
    if fmt in ("auto", "space") and (match := _SPACE_PAIR_RE.match(text)):
        return float(match.group(1)), float(match.group(2))
    return None


def detect_combined_format(value: Any) -> str | None:
    """Name of the combined format a value is written in."""
    if _parse_geojson(value):
        return "geojson"
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return "comma"
    text = str(value).strip() if value is not None else ""
    if _COMMA_PAIR_RE.match(text):
        return "comma"
    if _SPACE_PAIR_RE.match(text):
        return "space"
    return None


# =============================================================================
# Validation
# =============================================================================


@dataclass
class CoordinateValidation:
    """Outcome of validating a (lat, lon) pair."""

    latitude: float | None
    longitude: float | None
    status: ValidationStatus
    confidence: float
    swapped: bool = False
    message: str | None = None

    @property
    def is_usable(self) -> bool:
        """Whether the pair may be stored as the event's location."""
        return self.status == ValidationStatus.VALID


def _in_lat_range(value: float) -> bool:
    return -90 <= value <= 90


def _in_lon_range(value: float) -> bool:
    return -180 <= value <= 180


def calculate_confidence(lat: float, lon: float) -> float:
    """Confidence for a valid pair; penalizes suspiciously round or extreme values."""
    confidence = 1.0
    if float(lat).is_integer() and float(lon).is_integer():
        confidence *= 0.9
    if abs(lat) > 85 or abs(lon) > 175:
        confidence *= 0.95
    return round(confidence, 4)


def validate_coordinates(
    lat: float | None,
    lon: float | None,
    autofix: bool = False,
) -> CoordinateValidation:
    """
    Classify a (lat, lon) pair.

    - Missing / NaN values, or a longitude beyond +/-180 -> invalid
    - (0, 0) -> suspicious_zero
    - Latitude beyond +/-90 with a non-zero longitude that is itself a
      plausible latitude -> swapped_axis (corrected only when autofix is on
      and the swapped pair is fully valid)
    - Any other latitude beyond +/-90 -> out_of_range
    """
    if lat is None or lon is None or math.isnan(lat) or math.isnan(lon):
        return CoordinateValidation(lat, lon, ValidationStatus.INVALID, 0.0, message="Missing coordinate")

    if lat == 0 and lon == 0:
        return CoordinateValidation(
            lat, lon, ValidationStatus.SUSPICIOUS_ZERO, 0.1, message="Coordinates are (0, 0)"
        )

    if not _in_lon_range(lon) and _in_lat_range(lat):
        return CoordinateValidation(
            lat, lon, ValidationStatus.INVALID, 0.0, message=f"Longitude {lon} outside [-180, 180]"
        )

    if not _in_lat_range(lat):
        if lon != 0 and _in_lat_range(lon):
            if autofix and _in_lon_range(lat):
                return CoordinateValidation(
                    lon, lat, ValidationStatus.VALID, 0.8, swapped=True,
                    message="Latitude and longitude were swapped",
                )
            return CoordinateValidation(
                lat, lon, ValidationStatus.SWAPPED_AXIS, 0.3, swapped=True,
                message="Latitude and longitude appear to be swapped",
            )
        if not _in_lon_range(lon):
            return CoordinateValidation(
                lat, lon, ValidationStatus.INVALID, 0.0, message="Both coordinates out of range"
            )
        return CoordinateValidation(
            lat, lon, ValidationStatus.OUT_OF_RANGE, 0.0, message=f"Latitude {lat} outside [-90, 90]"
        )

    return CoordinateValidation(lat, lon, ValidationStatus.VALID, calculate_confidence(lat, lon))


def looks_swapped(lat: float | None, lon: float | None) -> bool:
    """Quick check used for batch-level swap detection."""
    if lat is None or lon is None:
        return False
    return 90 < abs(lat) <= 180 and abs(lon) <= 90


def detect_swapped_batch(pairs: Sequence[tuple[float | None, float | None]]) -> bool:
    """True when most sampled pairs look swapped."""
    usable = [(lat, lon) for lat, lon in pairs if lat is not None and lon is not None]
    if not usable:
        return False
    swapped = sum(1 for lat, lon in usable if looks_swapped(lat, lon))
    return swapped / len(usable) > SWAP_DETECTION_RATIO


# =============================================================================
# Column detection
# =============================================================================


def _find_column(headers: Sequence[str], patterns: Sequence[re.Pattern]) -> str | None:
    # Pattern order encodes preference
    for pattern in patterns:
        for header in headers:
            if pattern.match(header.strip()):
                return header
    return None


def _sample_pairs(
    rows: Sequence[Mapping[str, Any]], lat_column: str, lon_column: str
) -> list[tuple[float | None, float | None]]:
    return [
        (parse_coordinate(row.get(lat_column)), parse_coordinate(row.get(lon_column)))
        for row in rows[:SAMPLE_SIZE]
    ]


def _score_pairs(pairs: list[tuple[float | None, float | None]]) -> tuple[float, bool]:
    usable = [(lat, lon) for lat, lon in pairs if lat is not None and lon is not None]
    if not usable:
        return 0.0, False
    swapped = detect_swapped_batch(usable)
    check = [(lon, lat) for lat, lon in usable] if swapped else usable
    valid = sum(1 for lat, lon in check if validate_coordinates(lat, lon).is_usable)
    return valid / len(usable), swapped


def detect_geo_columns(
    headers: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
) -> GeoDetection:
    """
    Locate coordinate columns: header patterns for separate columns, then
    combined columns, then a value heuristic over all numeric columns.
    """
    lat_column = _find_column(headers, LATITUDE_PATTERNS)
    lon_column = _find_column(headers, LONGITUDE_PATTERNS)
    if lat_column and lon_column:
        ratio, swapped = _score_pairs(_sample_pairs(rows, lat_column, lon_column))
        if ratio >= DETECTION_MIN_VALID_RATIO:
            return GeoDetection(
                type="separate",
                latitude_path=lat_column,
                longitude_path=lon_column,
                confidence=round(ratio, 3),
                swapped=swapped,
                detection_method="pattern",
            )

    combined = _find_column(headers, COMBINED_PATTERNS)
    if combined:
        samples = [row.get(combined) for row in rows[:SAMPLE_SIZE] if row.get(combined) is not None]
        formats = [detect_combined_format(v) for v in samples]
        detected = [f for f in formats if f]
        if samples and len(detected) / len(samples) >= DETECTION_MIN_VALID_RATIO:
            fmt = max(set(detected), key=detected.count)
            return GeoDetection(
                type="combined",
                combined_path=combined,
                combined_format=fmt,
                confidence=round(len(detected) / len(samples), 3),
                detection_method="pattern",
            )

    return _detect_by_heuristics(headers, rows)


def _detect_by_heuristics(headers: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> GeoDetection:
    sample = rows[:SAMPLE_SIZE]
    lat_candidates: list[str] = []
    lon_candidates: list[str] = []
    for header in headers:
        values = [parse_coordinate(row.get(header)) for row in sample]
        numbers = [v for v in values if v is not None]
        if not numbers or len(numbers) / max(len(sample), 1) < DETECTION_MIN_VALID_RATIO:
            continue
        # Whole numbers are more likely counts or years than coordinates
        if all(float(n).is_integer() for n in numbers):
            continue
        if all(_in_lat_range(n) for n in numbers):
            lat_candidates.append(header)
        elif all(_in_lon_range(n) for n in numbers):
            lon_candidates.append(header)

    if lat_candidates and lon_candidates:
        lat_column, lon_column = lat_candidates[0], lon_candidates[0]
        ratio, swapped = _score_pairs(_sample_pairs(rows, lat_column, lon_column))
        if ratio >= DETECTION_MIN_VALID_RATIO:
            return GeoDetection(
                type="separate",
                latitude_path=lat_column,
                longitude_path=lon_column,
                confidence=round(ratio * 0.7, 3),
                swapped=swapped,
                detection_method="heuristic",
            )
    return GeoDetection()
