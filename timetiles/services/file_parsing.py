"""
Import file parsing.

Turns an uploaded or fetched blob into sheets of row dicts:
- CSV: delimiter sniffed, values coerced (numbers, booleans, empty -> None)
- XLSX: one sheet per worksheet, first row is the header (openpyxl)
- JSON: array of objects, a wrapper object holding one, or a GeoJSON FeatureCollection
"""

from __future__ import annotations

import codecs
import csv
import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

import chardet
import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from timetiles.services.exceptions import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "xlsx", "json")

ENCODING_SAMPLE_BYTES = 10_000
MIN_ENCODING_CONFIDENCE = 0.5

_INT_RE = re.compile(r"^[+-]?(0|[1-9]\d*)$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_JSON_WRAPPER_KEYS = ("data", "items", "events", "records", "results", "features")

_MIME_TYPES = {
    "text/csv": "csv",
    "application/csv": "csv",
    "text/plain": "csv",
    "application/json": "json",
    "application/geo+json": "json",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-excel": "xls",
}


@dataclass
class ParsedSheet:
    """Rows of one sheet."""

    index: int
    name: str
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {"index": self.index, "name": self.name, "row_count": len(self.rows), "headers": self.headers}


# =============================================================================
# File type detection
# =============================================================================


def detect_file_type(
    content: bytes,
    content_type: str | None = None,
    filename: str | None = None,
) -> str | None:
    """
    Guess csv/xlsx/xls/json from content type, extension and magic bytes.

    Magic bytes win over a generic content type; the CSV heuristic is the
    last resort for text without a better signal.
    """
    if content.startswith(b"PK\x03\x04"):
        return "xlsx"
    if content.startswith(b"\xd0\xcf\x11\xe0"):
        return "xls"

    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in _MIME_TYPES and mime != "text/plain":
        return _MIME_TYPES[mime]

    if filename:
        suffix = Path(filename.split("?")[0]).suffix.lower().lstrip(".")
        if suffix in ("csv", "tsv", "txt"):
            return "csv"
        if suffix in ("json", "geojson"):
            return "json"
        if suffix in ("xlsx", "xls"):
            return suffix

    head = content[:4096].lstrip()
    if head[:1] in (b"[", b"{"):
        return "json"
    try:
        # The window may cut a multi-byte character in half
        text = head.decode(detect_encoding(head), errors="ignore")
    except ValidationError:
        return None
    lines = [line for line in text.splitlines()[:5] if line.strip()]
    if lines and all(any(d in line for d in ",;\t") for line in lines):
        return "csv"
    return None


# =============================================================================
# Value coercion
# =============================================================================


def coerce_value(value: Any) -> Any:
    """
    Type CSV cell text.

    Integers with leading zeros ("007", postal codes) stay strings.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return text


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip() or None
    return value


# =============================================================================
# Parsers
# =============================================================================


def detect_encoding(content: bytes) -> str:
    """
    Text encoding of an import file.

    A byte-order mark decides outright, valid UTF-8 is taken as UTF-8, and
    anything else goes to chardet over the first ENCODING_SAMPLE_BYTES.
    Raises ValidationError when chardet is not confident enough.
    """
    if content.startswith(codecs.BOM_UTF8):
        return "utf-8-sig"
    if content.startswith((codecs.BOM_UTF32_LE, codecs.BOM_UTF32_BE)):
        return "utf-32"
    if content.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return "utf-16"
    try:
        content.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        pass

    detected = chardet.detect(content[:ENCODING_SAMPLE_BYTES])
    encoding = detected.get("encoding")
    confidence = detected.get("confidence") or 0.0
    if not encoding or confidence < MIN_ENCODING_CONFIDENCE:
        raise ValidationError(
            f"Could not determine file encoding (best guess {encoding!r}, confidence {confidence:.2f})",
            field="file",
        )
    logger.info(f"Detected encoding: {encoding} (confidence: {confidence:.2f})")
    return encoding


def _decode(content: bytes) -> str:
    encoding = detect_encoding(content)
    try:
        return content.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise ValidationError(f"File is not valid {encoding}: {e}", field="file") from e


def _unique_headers(raw: list[Any]) -> list[str]:
    headers: list[str] = []
    for position, value in enumerate(raw):
        name = str(value).strip() if value not in (None, "") else f"column_{position + 1}"
        candidate, suffix = name, 2
        while candidate in headers:
            candidate = f"{name}_{suffix}"
            suffix += 1
        headers.append(candidate)
    return headers


def parse_csv(content: bytes, name: str = "Sheet1") -> ParsedSheet:
    text = _decode(content)
    sample = text[:8192]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","

    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    try:
        headers = _unique_headers(next(reader))
    except StopIteration:
        return ParsedSheet(index=0, name=name)

    rows: list[dict[str, Any]] = []
    for record in reader:
        if not any(cell.strip() for cell in record):
            continue
        rows.append({header: coerce_value(cell) for header, cell in zip(headers, record, strict=False)})
    return ParsedSheet(index=0, name=name, headers=headers, rows=rows)


def parse_xlsx(content: bytes) -> list[ParsedSheet]:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (OSError, KeyError, ValueError, zipfile.BadZipFile, InvalidFileException) as e:
        raise ValidationError(f"Cannot open Excel file: {e}", field="file") from e

    sheets: list[ParsedSheet] = []
    try:
        for index, worksheet in enumerate(workbook.worksheets):
            values = worksheet.iter_rows(values_only=True)
            first = next(values, None)
            if first is None:
                sheets.append(ParsedSheet(index=index, name=worksheet.title))
                continue
            headers = _unique_headers(list(first))
            rows = []
            for record in values:
                cells = [_json_safe(v) for v in record]
                if all(c is None for c in cells):
                    continue
                rows.append(dict(zip(headers, cells, strict=False)))
            sheets.append(ParsedSheet(index=index, name=worksheet.title, headers=headers, rows=rows))
    finally:
        workbook.close()
    return sheets


def parse_json(content: bytes, name: str = "Sheet1") -> ParsedSheet:
    try:
        payload = json.loads(_decode(content))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e.msg} (line {e.lineno})", field="file") from e

    if isinstance(payload, dict):
        for key in _JSON_WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            payload = [payload]
    if not isinstance(payload, list):
        raise ValidationError("JSON import must contain a list of objects", field="file")

    rows: list[dict[str, Any]] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "Feature":
            # GeoJSON feature: properties plus the geometry as a combined coordinate field
            row = dict(item.get("properties") or {})
            row["geometry"] = item.get("geometry")
            if item.get("id") is not None and "id" not in row:
                row["id"] = item["id"]
            item = row
        rows.append(item)

    headers: list[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)
    return ParsedSheet(index=0, name=name, headers=headers, rows=rows)


def parse_file(content: bytes, file_type: str) -> list[ParsedSheet]:
    """Parse a blob into sheets. Raises ValidationError on unsupported input."""
    if file_type == "csv":
        return [parse_csv(content)]
    if file_type == "xlsx":
        return parse_xlsx(content)
    if file_type == "json":
        return [parse_json(content)]
    if file_type == "xls":
        raise ValidationError("Legacy .xls files are not supported, save the file as .xlsx", field="file")
    raise ValidationError(f"Unsupported file type '{file_type}'", field="file")


def read_sheet(storage_path: str, file_type: str, sheet_index: int) -> ParsedSheet:
    """Load one sheet from a stored import file."""
    content = Path(storage_path).read_bytes()
    sheets = parse_file(content, file_type)
    for sheet in sheets:
        if sheet.index == sheet_index:
            return sheet
    raise ValidationError(f"Sheet {sheet_index} not found in file", field="sheet_index")
