from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import psycopg2
import psycopg2.errors

from apitable.collectors.exceptions import NotFoundError, RangeOrLengthError
from apitable.db.core import PostgresEngine
from apitable.db.dynamic_table import DynamicTableManager, quote_identifier
from apitable.ingest.hashing import canonical_json, content_hash
from apitable.ingest.retry_policy import RetryPolicy
from apitable.ingest.schema_inference import (
    SYSTEM_COLUMNS,
    FieldType,
    flatten_record,
    get_safe_field_name,
)

DEFAULT_CHUNK_SIZE = 1000
MAX_TEXT_LENGTH = 65535
MAX_SAFE_INTEGER = 2**53 - 1

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

# Leading columns of every prepared row, in insert order.
ROW_PREFIX_COLUMNS = ["session_id", "page_number", "data_index", "data_hash"]

COLUMN_BOUND_ERRORS = (
    psycopg2.errors.NumericValueOutOfRange,
    psycopg2.errors.StringDataRightTruncation,
    psycopg2.errors.InvalidTextRepresentation,
)


def is_column_bound_error(exc: BaseException) -> bool:
    return isinstance(exc, COLUMN_BOUND_ERRORS)


def clean_value(value: Any, max_text_length: int = MAX_TEXT_LENGTH) -> Any:
    """
    Normalize a flattened value before it is bound to a column.

    - non-finite numbers become None
    - numbers beyond +/-(2**53 - 1) are stringified
    - strings lose control characters and are cut to max_text_length
    - objects and arrays become JSON text
    - booleans pass through
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if isinstance(value, Decimal) and not value.is_finite():
            return None
        if abs(value) > MAX_SAFE_INTEGER:
            return str(value)
        return value
    if isinstance(value, str):
        return CONTROL_CHARS.sub("", value)[:max_text_length]
    if isinstance(value, (dict, list, tuple)):
        return to_json(value, max_text_length)
    if isinstance(value, (datetime, date)):
        return value
    return CONTROL_CHARS.sub("", str(value))[:max_text_length]


def clean_json(value: Any, max_text_length: int = MAX_TEXT_LENGTH) -> Any:
    """
    Recursively clean a nested object or array so jsonb accepts it.

    Strings (keys included) lose control characters and are cut to
    max_text_length; non-finite numbers become None.
    """
    if isinstance(value, dict):
        return {
            clean_json(str(k), max_text_length): clean_json(v, max_text_length)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [clean_json(v, max_text_length) for v in value]
    if isinstance(value, str):
        return CONTROL_CHARS.sub("", value)[:max_text_length]
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, Decimal) and not value.is_finite():
        return None
    return value


def to_json(value: Any, max_text_length: int = MAX_TEXT_LENGTH) -> str:
    return canonical_json(clean_json(value, max_text_length), allow_nan=False)


def to_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def prepare_value(
    value: Any, field_type: FieldType, max_text_length: int = MAX_TEXT_LENGTH
) -> Any:
    """Clean a raw value and bring it into a form its column accepts."""
    if field_type == FieldType.JSON:
        value = clean_json(value, max_text_length)
        return None if value is None else canonical_json(value, allow_nan=False)
    value = clean_value(value, max_text_length)
    if value is None:
        return None
    if field_type == FieldType.TEXT:
        return to_text(value)
    if field_type == FieldType.NUMBER and isinstance(value, bool):
        return int(value)
    if field_type == FieldType.BOOLEAN and not isinstance(value, bool):
        return to_text(value)
    if field_type == FieldType.DATETIME and not isinstance(value, (datetime, date)):
        return to_text(value)
    return value


def stringify_fields(row: tuple) -> tuple:
    """Fallback transform: every non-null field value becomes text."""
    prefix = row[: len(ROW_PREFIX_COLUMNS)]
    rest = tuple(to_text(v) for v in row[len(ROW_PREFIX_COLUMNS) :])
    return prefix + rest


@dataclass
class InsertResult:
    inserted: int = 0
    duplicates: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.duplicates


class BatchWriter:
    """
    Writes a page of raw records into a session table.

    Rows are deduplicated on (session_id, data_hash) by the table's
    unique constraint; conflicting rows are counted as duplicates.

    Usage:
        writer = BatchWriter(engine, table_manager)
        result = writer.insert_batch("data_abc", records, "abc", page_number=1)
        print(result.inserted, result.duplicates)
    """

    def __init__(
        self,
        engine: PostgresEngine,
        table_manager: DynamicTableManager | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_text_length: int = MAX_TEXT_LENGTH,
    ) -> None:
        self.engine = engine
        self.table_manager = table_manager or DynamicTableManager(engine)
        self.chunk_size = chunk_size
        self.max_text_length = max_text_length
        self.row_policy = RetryPolicy(
            max_attempts=2,
            is_retryable=is_column_bound_error,
            fallback=stringify_fields,
        )
        self.logger = logging.getLogger("batch_writer")
        self._column_cache: dict[str, dict[str, FieldType]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def insert_batch(
        self,
        table_name: str,
        raw_records: list[dict[str, Any]],
        session_id: str,
        page_number: int,
    ) -> InsertResult:
        """
        Insert one page of records, chunked, in a single unit of work.

        Any chunk failure aborts the whole call. Inside an enclosing unit
        of work (table creation plus first page) the call shares that
        transaction instead of committing on its own.

        Returns:
            InsertResult with new-row and duplicate counts.
        """
        if not raw_records:
            return InsertResult()

        column_types = self.get_column_types(table_name)
        field_columns = list(column_types)
        rows = self._prepare_rows(
            raw_records, session_id, page_number, column_types
        )

        result = InsertResult()
        with self.engine.unit_of_work():
            for start in range(0, len(rows), self.chunk_size):
                chunk = rows[start : start + self.chunk_size]
                inserted = self._insert_chunk(table_name, field_columns, chunk)
                result.inserted += inserted
                result.duplicates += len(chunk) - inserted

        self.logger.info(
            "Page %d -> %s: %d new, %d duplicate",
            page_number,
            table_name,
            result.inserted,
            result.duplicates,
        )
        return result

    def get_column_types(self, table_name: str) -> dict[str, FieldType]:
        """Destination columns (system columns excluded) and their types."""
        if table_name in self._column_cache:
            return self._column_cache[table_name]
        info = self.table_manager.get_table_info(table_name)
        if not info.exists:
            raise NotFoundError(f"Table {table_name} does not exist")
        column_types = {
            col.name: col.field_type
            for col in info.columns
            if col.name not in SYSTEM_COLUMNS
        }
        self._column_cache[table_name] = column_types
        return column_types

    def forget_table(self, table_name: str) -> None:
        self._column_cache.pop(table_name, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prepare_rows(
        self,
        raw_records: list[dict[str, Any]],
        session_id: str,
        page_number: int,
        column_types: dict[str, FieldType],
    ) -> list[tuple]:
        rows = []
        dropped: set[str] = set()
        for index, record in enumerate(raw_records):
            values: dict[str, Any] = {}
            for raw_name, value in flatten_record(record).items():
                name = get_safe_field_name(raw_name)
                if name not in column_types:
                    dropped.add(name)
                    continue
                values[name] = prepare_value(
                    value, column_types[name], self.max_text_length
                )
            rows.append(
                (session_id, page_number, index, content_hash(record))
                + tuple(values.get(name) for name in column_types)
            )
        if dropped:
            self.logger.warning(
                "Dropping %d field(s) with no destination column: %s",
                len(dropped),
                sorted(dropped),
            )
        return rows

    def _insert_chunk(
        self, table_name: str, field_columns: list[str], chunk: list[tuple]
    ) -> int:
        try:
            with self.engine.unit_of_work() as inner:
                return self._execute_insert(inner, table_name, field_columns, chunk)
        except psycopg2.Error as e:
            if not is_column_bound_error(e):
                raise
            self.logger.warning(
                "Chunk of %d rows hit a column bound (%s); retrying row by row",
                len(chunk),
                e,
            )
        return sum(self._insert_row(table_name, field_columns, row) for row in chunk)

    def _insert_row(self, table_name: str, field_columns: list[str], row: tuple) -> int:
        def attempt(values: tuple) -> int:
            with self.engine.unit_of_work() as cur:
                return self._execute_insert(cur, table_name, field_columns, [values])

        try:
            return self.row_policy.run(attempt, row)
        except COLUMN_BOUND_ERRORS as e:
            raise RangeOrLengthError(
                f"Row {row[2]} of page {row[1]} does not fit {table_name}: {e}"
            ) from e

    def _execute_insert(
        self, cur, table_name: str, field_columns: list[str], rows: list[tuple]
    ) -> int:
        columns = ROW_PREFIX_COLUMNS + field_columns
        col_list = ", ".join(quote_identifier(c) for c in columns)
        sql = (
            f"INSERT INTO {self.table_manager.fqn(table_name)} ({col_list}) VALUES %s "
            f'ON CONFLICT ("session_id", "data_hash") DO NOTHING '
            f'RETURNING "data_hash"'
        )
        returned = self.engine.execute_values(cur, sql, rows, fetch=True)
        return len(returned)
