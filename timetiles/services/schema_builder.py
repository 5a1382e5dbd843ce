"""
Schema inference, comparison and transformation.

Pure functions only - no database access. Used by the import pipeline's
detect-schema and validate-schema stages and by schema_service.

Provides:
- SchemaBuilder: progressive inference over batches (types, formats, enums)
- compare_schemas(): diff against the current schema version
- evaluate_approval(): policy decision for a diff
- suggest_transforms() / apply_transforms(): operator-resolvable fixes
"""

from __future__ import annotations

import copy
import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from rapidfuzz import fuzz

from timetiles.schemas.enums import TransformType
from timetiles.schemas.jsonb_types import SchemaConfig, TransformRule

# Distinct values tracked per field before giving up on enum detection
MAX_TRACKED_VALUES = 1000
# Minimum name similarity (0-100) for a rename suggestion
RENAME_SIMILARITY_THRESHOLD = 70

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")
_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

# Type changes that widen rather than narrow
_COMPATIBLE_TYPE_CHANGES = {("integer", "number")}


def value_type(value: Any) -> str:
    """JSON-ish type name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "integer" if value.is_integer() else "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, datetime):
        return "string"
    return "string"


def string_format(value: str) -> str | None:
    """Detect a well-known string format."""
    text = value.strip()
    if _EMAIL_RE.match(text):
        return "email"
    if _URL_RE.match(text):
        return "url"
    if _DATE_RE.match(text):
        return "date"
    if _DATETIME_RE.match(text):
        return "date-time"
    if _NUMERIC_RE.match(text):
        return "numeric"
    return None


def flatten(row: Mapping[str, Any], max_depth: int = 3, prefix: str = "") -> dict[str, Any]:
    """Flatten nested objects into dot paths, keeping deeper objects whole."""
    flat: dict[str, Any] = {}
    for key, value in row.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value and max_depth > 1:
            flat.update(flatten(value, max_depth - 1, f"{path}."))
        else:
            flat[path] = value
    return flat


# =============================================================================
# Inference
# =============================================================================


@dataclass
class FieldStats:
    """Statistics collected for one field path."""

    path: str
    occurrences: int = 0
    null_count: int = 0
    types: Counter = field(default_factory=Counter)
    formats: Counter = field(default_factory=Counter)
    values: set = field(default_factory=set)
    values_overflow: bool = False
    min_value: float | None = None
    max_value: float | None = None

    def add(self, value: Any) -> None:
        self.occurrences += 1
        kind = value_type(value)
        self.types[kind] += 1
        if kind == "null":
            self.null_count += 1
            return

        if kind in ("integer", "number"):
            number = float(value)
            self.min_value = number if self.min_value is None else min(self.min_value, number)
            self.max_value = number if self.max_value is None else max(self.max_value, number)
        elif kind == "string":
            fmt = string_format(str(value))
            if fmt:
                self.formats[fmt] += 1

        if kind in ("string", "integer", "number", "boolean") and not self.values_overflow:
            self.values.add(value)
            if len(self.values) > MAX_TRACKED_VALUES:
                self.values_overflow = True
                self.values.clear()

    @property
    def non_null(self) -> int:
        return self.occurrences - self.null_count

    def resolved_type(self) -> str:
        kinds = {k for k in self.types if k != "null"}
        if not kinds:
            return "null"
        if kinds == {"integer", "number"}:
            return "number"
        if len(kinds) == 1:
            return kinds.pop()
        if "string" in kinds:
            return "string"
        return "mixed"

    def resolved_format(self) -> str | None:
        if not self.formats or self.resolved_type() != "string":
            return None
        fmt, count = self.formats.most_common(1)[0]
        # Format must hold for every non-null value
        return fmt if count == self.non_null else None

    def to_metadata(self) -> dict[str, Any]:
        return {
            "occurrences": self.occurrences,
            "null_count": self.null_count,
            "type_distribution": dict(self.types),
            "formats": dict(self.formats),
            "unique_values": None if self.values_overflow else len(self.values),
            "min": self.min_value,
            "max": self.max_value,
        }


class SchemaBuilder:
    """
    Progressive schema inference.

    Rows can be fed in chunks; `build()` may be called at any point.
    """

    def __init__(
        self,
        enum_threshold: int = 50,
        enum_mode: str = "count",
        enum_percentage: float = 5.0,
        max_depth: int = 3,
    ):
        self.enum_threshold = enum_threshold
        self.enum_mode = enum_mode
        self.enum_percentage = enum_percentage
        self.max_depth = max_depth
        self.row_count = 0
        self.fields: dict[str, FieldStats] = {}

    @classmethod
    def from_config(cls, config: SchemaConfig, defaults) -> SchemaBuilder:
        """Build with dataset overrides falling back to ImportSettings."""
        return cls(
            enum_threshold=config.enum_threshold or defaults.enum_threshold,
            enum_mode=config.enum_mode or defaults.enum_mode,
            enum_percentage=defaults.enum_percentage,
            max_depth=config.max_schema_depth or defaults.max_schema_depth,
        )

    def add_row(self, row: Mapping[str, Any]) -> None:
        self.row_count += 1
        for path, value in flatten(row, self.max_depth).items():
            stats = self.fields.get(path)
            if stats is None:
                stats = self.fields[path] = FieldStats(path)
            stats.add(value)

    def add_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        for row in rows:
            self.add_row(row)

    def _is_enum(self, stats: FieldStats) -> bool:
        if stats.values_overflow or stats.resolved_type() != "string":
            return False
        distinct = len(stats.values)
        # Needs some repetition to look like a category
        if distinct == 0 or distinct >= stats.non_null:
            return False
        if self.enum_mode == "percentage":
            return distinct / stats.non_null * 100 <= self.enum_percentage
        return distinct <= self.enum_threshold

    def build(self) -> dict[str, Any]:
        """Schema document: {"properties": {...}, "required": [...]}."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for path in sorted(self.fields):
            stats = self.fields[path]
            prop: dict[str, Any] = {"type": stats.resolved_type()}
            fmt = stats.resolved_format()
            if fmt:
                prop["format"] = fmt
            if self._is_enum(stats):
                prop["enum"] = sorted(str(v) for v in stats.values)
            properties[path] = prop
            if stats.null_count == 0 and stats.occurrences == self.row_count and self.row_count:
                required.append(path)
        return {"properties": properties, "required": required}

    def field_metadata(self) -> dict[str, Any]:
        return {path: stats.to_metadata() for path, stats in sorted(self.fields.items())}


def infer_schema(rows: Iterable[Mapping[str, Any]], **kwargs: Any) -> dict[str, Any]:
    """One-shot inference helper."""
    builder = SchemaBuilder(**kwargs)
    builder.add_rows(rows)
    return builder.build()


# =============================================================================
# Comparison
# =============================================================================


@dataclass
class SchemaDiff:
    """Structural difference between the current schema and a new batch."""

    new_fields: list[dict[str, Any]] = field(default_factory=list)
    removed_fields: list[dict[str, Any]] = field(default_factory=list)
    type_changes: list[dict[str, Any]] = field(default_factory=list)
    enum_changes: list[dict[str, Any]] = field(default_factory=list)
    required_changes: list[dict[str, Any]] = field(default_factory=list)
    breaking_reasons: list[str] = field(default_factory=list)

    @property
    def is_breaking(self) -> bool:
        return bool(self.breaking_reasons)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.new_fields
            or self.removed_fields
            or self.type_changes
            or self.enum_changes
            or self.required_changes
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_breaking"] = self.is_breaking
        data["has_changes"] = self.has_changes
        return data


def compare_schemas(old: Mapping[str, Any] | None, new: Mapping[str, Any]) -> SchemaDiff:
    """
    Diff two schema documents.

    Breaking: removed fields, narrowing type changes, removed enum values.
    Compatible: new fields, integer -> number widening, enum additions.
    """
    diff = SchemaDiff()
    old_props: Mapping[str, Any] = (old or {}).get("properties", {})
    new_props: Mapping[str, Any] = new.get("properties", {})
    old_required = set((old or {}).get("required", []))
    new_required = set(new.get("required", []))

    for path in sorted(set(new_props) - set(old_props)):
        diff.new_fields.append(
            {"path": path, "type": new_props[path].get("type"), "required": path in new_required}
        )

    for path in sorted(set(old_props) - set(new_props)):
        diff.removed_fields.append({"path": path, "type": old_props[path].get("type")})
        diff.breaking_reasons.append(f"Field '{path}' was removed")

    for path in sorted(set(old_props) & set(new_props)):
        old_type = old_props[path].get("type")
        new_type = new_props[path].get("type")
        if old_type != new_type and "null" not in (old_type, new_type):
            change = {"path": path, "old_type": old_type, "new_type": new_type}
            diff.type_changes.append(change)
            if (old_type, new_type) not in _COMPATIBLE_TYPE_CHANGES:
                diff.breaking_reasons.append(
                    f"Field '{path}' changed type from {old_type} to {new_type}"
                )

        old_enum = old_props[path].get("enum")
        new_enum = new_props[path].get("enum")
        if old_enum and new_enum and set(old_enum) != set(new_enum):
            added = sorted(set(new_enum) - set(old_enum))
            removed = sorted(set(old_enum) - set(new_enum))
            diff.enum_changes.append({"path": path, "added": added, "removed": removed})
            if removed:
                diff.breaking_reasons.append(
                    f"Field '{path}' lost enum values: {', '.join(removed)}"
                )

        if (path in new_required) != (path in old_required):
            diff.required_changes.append({"path": path, "required": path in new_required})

    return diff


@dataclass
class ApprovalDecision:
    requires_approval: bool
    reason: str | None = None


def evaluate_approval(
    diff: SchemaDiff,
    config: SchemaConfig,
    has_current_schema: bool,
) -> ApprovalDecision:
    """Decide whether a diff must stop at the approval gate."""
    if not diff.has_changes:
        return ApprovalDecision(False)
    if config.locked:
        return ApprovalDecision(True, "Schema is locked")
    if not has_current_schema:
        return ApprovalDecision(False)
    if diff.is_breaking:
        return ApprovalDecision(True, "Breaking schema changes detected")
    if config.strict and diff.new_fields:
        return ApprovalDecision(True, "New fields require approval in strict mode")
    if not (config.auto_grow and config.auto_approve_non_breaking):
        return ApprovalDecision(True, "Non-breaking changes require manual approval")
    return ApprovalDecision(False)


# =============================================================================
# Row validation
# =============================================================================


def validate_row(row: Mapping[str, Any], schema: Mapping[str, Any], max_depth: int = 3) -> list[tuple[str, str]]:
    """Return (path, message) for values that conflict with the schema's types."""
    problems: list[tuple[str, str]] = []
    properties = schema.get("properties", {})
    for path, value in flatten(row, max_depth).items():
        expected = properties.get(path, {}).get("type")
        if expected in (None, "null", "mixed") or value is None:
            continue
        actual = value_type(value)
        if actual == expected or (expected, actual) == ("number", "integer"):
            continue
        problems.append((path, f"Expected {expected}, got {actual}"))
    return problems


# =============================================================================
# Transforms
# =============================================================================


def suggest_transforms(
    diff: SchemaDiff,
    new_schema: Mapping[str, Any],
) -> list[TransformRule]:
    """Propose transforms that would resolve breaking changes."""
    suggestions: list[TransformRule] = []
    new_props = new_schema.get("properties", {})
    unmatched_new = {f["path"]: f for f in diff.new_fields}

    # Removed field + similarly named new field of the same type -> rename
    for removed in diff.removed_fields:
        best_path, best_score = None, 0.0
        for path, new_field in unmatched_new.items():
            if new_field.get("type") != removed.get("type"):
                continue
            score = fuzz.ratio(removed["path"].lower(), path.lower())
            if score > best_score:
                best_path, best_score = path, score
        if best_path and best_score >= RENAME_SIMILARITY_THRESHOLD:
            suggestions.append(
                TransformRule(
                    type=TransformType.RENAME,
                    from_field=best_path,
                    to_field=removed["path"],
                    confidence=round(best_score, 1),
                )
            )
            unmatched_new.pop(best_path)

    # Type narrowed to string -> cast back to the old type
    for change in diff.type_changes:
        old_type = change["old_type"]
        if change["new_type"] == "string" and old_type in ("integer", "number", "boolean"):
            suggestions.append(
                TransformRule(
                    type=TransformType.TYPE_CAST,
                    from_field=change["path"],
                    target_type=old_type,
                )
            )
        elif change["new_type"] in ("integer", "number", "boolean") and old_type == "string":
            suggestions.append(
                TransformRule(
                    type=TransformType.TYPE_CAST,
                    from_field=change["path"],
                    target_type="string",
                )
            )

    # One new string field covering two removed ones -> split it back
    removed_strings = [f["path"] for f in diff.removed_fields if f.get("type") == "string"]
    for path, new_field in unmatched_new.items():
        if new_props.get(path, {}).get("type") != "string":
            continue
        parts = [r for r in removed_strings if r.split("_")[0].lower() in path.lower()]
        if len(parts) >= 2:
            suggestions.append(
                TransformRule(
                    type=TransformType.SPLIT,
                    from_field=path,
                    to_fields=parts,
                    separator=" ",
                )
            )

    return suggestions


def _set_path(row: dict[str, Any], path: str, value: Any) -> None:
    if path in row or "." not in path:
        row[path] = value
        return
    current = row
    parts = path.split(".")
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = current[part] = {}
        current = nxt
    current[parts[-1]] = value


def _get_path(row: Mapping[str, Any], path: str) -> Any:
    if path in row:
        return row[path]
    current: Any = row
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _pop_path(row: dict[str, Any], path: str) -> Any:
    if path in row:
        return row.pop(path)
    parts = path.split(".")
    current: Any = row
    for part in parts[:-1]:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    if isinstance(current, dict):
        return current.pop(parts[-1], None)
    return None


def cast_value(value: Any, target_type: str, fmt: str | None = None) -> Any:
    """Cast a value, raising ValueError when it cannot be represented."""
    if value is None:
        return None
    if target_type == "string":
        return str(value)
    if target_type in ("number", "integer"):
        if isinstance(value, bool):
            raise ValueError(f"Cannot cast boolean to {target_type}")
        text = str(value).strip()
        if fmt:  # decimal separator, e.g. ","
            text = text.replace(".", "").replace(fmt, ".") if fmt != "." else text
        number = float(text.replace(" ", ""))
        if target_type == "integer":
            if not number.is_integer():
                raise ValueError(f"'{value}' is not an integer")
            return int(number)
        return number
    if target_type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "yes", "1", "y"):
            return True
        if text in ("false", "no", "0", "n"):
            return False
        raise ValueError(f"'{value}' is not a boolean")
    if target_type == "date":
        text = str(value).strip()
        parsed = datetime.strptime(text, fmt) if fmt else datetime.fromisoformat(text)
        return parsed.isoformat()
    raise ValueError(f"Unknown target type '{target_type}'")


def apply_transforms(row: Mapping[str, Any], rules: Iterable[TransformRule]) -> dict[str, Any]:
    """
    Apply transforms to a copy of the row.

    Raises ValueError on a value that cannot be transformed; callers record
    it as a row error.
    """
    result = copy.deepcopy(dict(row))
    for rule in rules:
        if not rule.enabled:
            continue

        if rule.type == TransformType.RENAME and rule.from_field and rule.to_field:
            if _get_path(result, rule.from_field) is not None or rule.from_field in result:
                _set_path(result, rule.to_field, _pop_path(result, rule.from_field))

        elif rule.type == TransformType.TYPE_CAST and rule.from_field and rule.target_type:
            value = _get_path(result, rule.from_field)
            if value is not None:
                _set_path(result, rule.from_field, cast_value(value, rule.target_type, rule.format))

        elif rule.type == TransformType.STRING_OP and rule.from_field and rule.operation:
            value = _get_path(result, rule.from_field)
            if isinstance(value, str):
                if rule.operation == "trim":
                    value = value.strip()
                elif rule.operation == "uppercase":
                    value = value.upper()
                elif rule.operation == "lowercase":
                    value = value.lower()
                elif rule.operation == "replace" and rule.pattern is not None:
                    try:
                        value = re.sub(rule.pattern, rule.replacement or "", value)
                    except re.error as e:
                        # Bad group references in the replacement only fail here
                        raise ValueError(f"Replace on '{rule.from_field}' failed: {e}") from e
                _set_path(result, rule.from_field, value)

        elif rule.type == TransformType.CONCATENATE and rule.fields and rule.to_field:
            parts = [_get_path(result, f) for f in rule.fields]
            joined = rule.separator.join(str(p) for p in parts if p not in (None, ""))
            _set_path(result, rule.to_field, joined or None)

        elif rule.type == TransformType.SPLIT and rule.from_field and rule.to_fields:
            value = _get_path(result, rule.from_field)
            if isinstance(value, str):
                pieces = value.split(rule.separator, len(rule.to_fields) - 1)
                for target, piece in zip(rule.to_fields, pieces, strict=False):
                    _set_path(result, target, piece.strip())

    return result
