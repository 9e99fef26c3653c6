from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

SYSTEM_COLUMNS = (
    "id",
    "session_id",
    "page_number",
    "data_index",
    "data_hash",
    "created_at",
)
RESERVED_PREFIX = "data_"
FIELD_SEPARATOR = "_"
MAX_IDENTIFIER_BYTES = 63


class FieldType(str, Enum):
    """Column types a JSON field can resolve to."""

    BOOLEAN = "boolean"
    NUMBER = "number"
    TEXT = "text"
    DATETIME = "datetime"
    JSON = "json"


class ValueShape(Enum):
    """Closed set of shapes a flattened value can take."""

    BOOLEAN = "boolean"
    NUMBER = "number"
    TEXT = "text"
    DATETIME = "datetime"
    JSON = "json"
    NULL = "null"


# Earlier entries win when a field shows more than one type.
WIDENING_ORDER = [
    FieldType.JSON,
    FieldType.TEXT,
    FieldType.NUMBER,
    FieldType.DATETIME,
    FieldType.BOOLEAN,
]

_SHAPE_TO_TYPE = {
    ValueShape.BOOLEAN: FieldType.BOOLEAN,
    ValueShape.NUMBER: FieldType.NUMBER,
    ValueShape.TEXT: FieldType.TEXT,
    ValueShape.DATETIME: FieldType.DATETIME,
    ValueShape.JSON: FieldType.JSON,
}


@dataclass
class FieldDefinition:
    type: FieldType
    nullable: bool = True
    default: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "nullable": self.nullable}
        if self.default is not None:
            data["default"] = self.default
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDefinition:
        return cls(
            type=FieldType(data["type"]),
            nullable=bool(data.get("nullable", True)),
            default=data.get("default"),
        )


@dataclass
class SchemaDescriptor:
    """Inferred shape of one session's records and the table holding them."""

    session_id: str
    table_name: str
    fields: dict[str, FieldDefinition] = field(default_factory=dict)

    def fields_to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: fd.to_dict() for name, fd in self.fields.items()}


# ------------------------------------------------------------------
# Value visitor
# ------------------------------------------------------------------


def classify_value(value: Any) -> ValueShape:
    """Map a single Python value onto the closed shape union."""
    if value is None:
        return ValueShape.NULL
    if isinstance(value, bool):
        return ValueShape.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return ValueShape.NUMBER
    if isinstance(value, str):
        return ValueShape.TEXT
    if isinstance(value, (datetime, date)):
        return ValueShape.DATETIME
    if isinstance(value, (dict, list, tuple)):
        return ValueShape.JSON
    # Anything else is stored through its string form
    return ValueShape.TEXT


def flatten_record(
    record: dict[str, Any],
    separator: str = FIELD_SEPARATOR,
    prefix: str = "",
) -> dict[str, Any]:
    """
    Flatten nested objects into single-level keys joined by *separator*.

    Arrays are left whole so they serialize as one JSON value. Empty
    objects are kept as a JSON value since there is nothing to expand.

        {"a": 1, "b": {"c": 2, "d": [1, 2]}} -> {"a": 1, "b_c": 2, "b_d": [1, 2]}
    """
    flat: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}{separator}{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_record(value, separator, name))
        else:
            flat[name] = value
    return flat


def infer_value_type(value: Any) -> FieldType | None:
    """Elementary type for one value; None carries no type signal."""
    return _SHAPE_TO_TYPE.get(classify_value(value))


def resolve_field_type(values: Iterable[Any]) -> FieldType:
    """
    Resolve the column type for a field from every value seen for it.

    Conflicting types widen to the first one present in WIDENING_ORDER.
    A field that was only ever null resolves to text.
    """
    seen = {t for t in (infer_value_type(v) for v in values) if t is not None}
    for candidate in WIDENING_ORDER:
        if candidate in seen:
            return candidate
    return FieldType.TEXT


def get_safe_field_name(name: str) -> str:
    """
    Column name to use for a flattened field.

    Names that collide with a system column (case-insensitive) get the
    data_ prefix. Names past PostgreSQL's identifier limit are cut and
    suffixed with a short digest so distinct long names stay distinct.
    """
    if name.lower() in SYSTEM_COLUMNS:
        name = f"{RESERVED_PREFIX}{name}"
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        head = name.encode("utf-8")[: MAX_IDENTIFIER_BYTES - 9]
        name = f"{head.decode('utf-8', errors='ignore')}_{digest}"
    return name


# ------------------------------------------------------------------
# Inference
# ------------------------------------------------------------------


class SchemaInferrer:
    """Infers a field map from a page of sample records."""

    def __init__(self, separator: str = FIELD_SEPARATOR) -> None:
        self.separator = separator
        self.logger = logging.getLogger("schema_inferrer")

    def infer(self, records: list[dict[str, Any]]) -> dict[str, FieldDefinition]:
        """
        Build an ordered field map from *records*.

        Field order follows first appearance. A field is nullable when
        any record lacks it or holds null. Returns an empty map only for
        an empty input.
        """
        if not records:
            return {}

        values: dict[str, list[Any]] = {}
        present_in: dict[str, int] = {}
        for record in records:
            flat = flatten_record(record, self.separator)
            for raw_name, value in flat.items():
                name = get_safe_field_name(raw_name)
                values.setdefault(name, []).append(value)
                present_in[name] = present_in.get(name, 0) + 1

        fields: dict[str, FieldDefinition] = {}
        for name, observed in values.items():
            nullable = present_in[name] < len(records) or any(
                v is None for v in observed
            )
            fields[name] = FieldDefinition(
                type=resolve_field_type(observed),
                nullable=nullable,
            )

        self.logger.info(
            "Inferred %d fields from %d sample records", len(fields), len(records)
        )
        return fields

    def infer_descriptor(
        self,
        session_id: str,
        table_name: str,
        records: list[dict[str, Any]],
    ) -> SchemaDescriptor:
        return SchemaDescriptor(
            session_id=session_id,
            table_name=table_name,
            fields=self.infer(records),
        )
