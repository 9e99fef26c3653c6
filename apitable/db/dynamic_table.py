from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pandas as pd
import psycopg2

from apitable.collectors.exceptions import NotFoundError
from apitable.db.core import PostgresEngine
from apitable.ingest.schema_inference import (
    FieldDefinition,
    FieldType,
    SchemaDescriptor,
)

TABLE_PREFIX = "data_"
MAX_FIELD_INDEXES = 5

PG_TYPE_MAP = {
    FieldType.BOOLEAN: "BOOLEAN",
    FieldType.NUMBER: "DOUBLE PRECISION",
    FieldType.TEXT: "TEXT",
    FieldType.DATETIME: "TIMESTAMPTZ",
    FieldType.JSON: "JSONB",
}

# information_schema.columns.data_type -> FieldType
REFLECTED_TYPE_MAP = {
    "boolean": FieldType.BOOLEAN,
    "smallint": FieldType.NUMBER,
    "integer": FieldType.NUMBER,
    "bigint": FieldType.NUMBER,
    "numeric": FieldType.NUMBER,
    "real": FieldType.NUMBER,
    "double precision": FieldType.NUMBER,
    "text": FieldType.TEXT,
    "character varying": FieldType.TEXT,
    "character": FieldType.TEXT,
    "timestamp with time zone": FieldType.DATETIME,
    "timestamp without time zone": FieldType.DATETIME,
    "date": FieldType.DATETIME,
    "json": FieldType.JSON,
    "jsonb": FieldType.JSON,
}

SYSTEM_COLUMN_DEFS = [
    '"id" BIGSERIAL PRIMARY KEY',
    '"session_id" VARCHAR(255) NOT NULL',
    '"page_number" INTEGER NOT NULL',
    '"data_index" INTEGER NOT NULL',
    '"data_hash" VARCHAR(64) NOT NULL',
]
CREATED_AT_DEF = '"created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()'

# Types worth a btree index, lowest expected cardinality first.
INDEXABLE_TYPES = [FieldType.BOOLEAN, FieldType.DATETIME, FieldType.NUMBER]


def quote_identifier(name: str) -> str:
    """Safely quote a PostgreSQL identifier."""
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def generate_table_name(session_id: str) -> str:
    """data_ + session id with every non-alphanumeric character replaced by _."""
    return TABLE_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", session_id)


def index_name(table_name: str, suffix: str) -> str:
    """Index name that fits in 63 bytes even for long table names."""
    name = f"idx_{table_name}_{suffix}"
    if len(name) <= 63:
        return name
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:10]
    return f"{name[:52]}_{digest}"


def default_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


@dataclass
class TableCreationResult:
    table_name: str
    created: bool
    fields_created: int = 0
    error: str | None = None


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool
    default: str | None = None

    @property
    def field_type(self) -> FieldType:
        return REFLECTED_TYPE_MAP.get(self.data_type.lower(), FieldType.TEXT)


@dataclass
class TableInfo:
    table_name: str
    exists: bool
    columns: list[ColumnInfo] = field(default_factory=list)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


@dataclass
class TableStats:
    table_name: str
    total_rows: int
    table_size: str
    created: datetime | None


class DynamicTableManager:
    """
    Creates, reflects and drops the per-session tables records land in.

    There is no migration path: create_table on an existing table drops
    it first. Every table gets the same system columns, a unique key on
    (session_id, data_hash) for deduplication, and a handful of indexes.

    Usage:
        manager = DynamicTableManager(engine, schema="public")
        result = manager.create_table(descriptor)
        if not result.created:
            raise TableCreationError(result.error)
    """

    def __init__(self, engine: PostgresEngine, schema: str = "public") -> None:
        self.engine = engine
        self.schema = schema
        self.logger = logging.getLogger("dynamic_table_manager")

    def fqn(self, table_name: str) -> str:
        return f"{quote_identifier(self.schema)}.{quote_identifier(table_name)}"

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def build_create_statement(self, descriptor: SchemaDescriptor) -> str:
        """Generate the CREATE TABLE statement for a descriptor."""
        column_defs = [f"    {c}" for c in SYSTEM_COLUMN_DEFS]
        for name, definition in descriptor.fields.items():
            column_defs.append(f"    {self._column_def(name, definition)}")
        column_defs.append(f"    {CREATED_AT_DEF}")
        constraint = index_name(descriptor.table_name, "session_hash")
        column_defs.append(
            f"    CONSTRAINT {quote_identifier(constraint)} "
            f'UNIQUE ("session_id", "data_hash")'
        )
        columns_sql = ",\n".join(column_defs)
        return f"CREATE TABLE {self.fqn(descriptor.table_name)} (\n{columns_sql}\n);"

    def build_index_statements(self, descriptor: SchemaDescriptor) -> list[str]:
        table = descriptor.table_name
        fqn = self.fqn(table)
        statements = [
            f"CREATE INDEX IF NOT EXISTS {quote_identifier(index_name(table, 'session_page'))} "
            f'ON {fqn} ("session_id", "page_number")',
            f"CREATE INDEX IF NOT EXISTS {quote_identifier(index_name(table, 'created_at'))} "
            f'ON {fqn} ("created_at")',
        ]
        for name in self.select_index_fields(descriptor.fields):
            idx = index_name(table, name)
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {quote_identifier(idx)} "
                f"ON {fqn} ({quote_identifier(name)})"
            )
        return statements

    @staticmethod
    def select_index_fields(
        fields: dict[str, FieldDefinition], limit: int = MAX_FIELD_INDEXES
    ) -> list[str]:
        """Pick up to *limit* fields to index, non-nullable ones first."""
        candidates = [
            (name, definition)
            for name, definition in fields.items()
            if definition.type in INDEXABLE_TYPES
        ]
        candidates.sort(
            key=lambda item: (item[1].nullable, INDEXABLE_TYPES.index(item[1].type))
        )
        return [name for name, _ in candidates[:limit]]

    @staticmethod
    def _column_def(name: str, definition: FieldDefinition) -> str:
        # Later pages may omit any inferred field, so columns always accept null
        col = f"{quote_identifier(name)} {PG_TYPE_MAP[definition.type]}"
        if definition.default is not None:
            col += f" DEFAULT {default_literal(definition.default)}"
        return col

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_table(self, descriptor: SchemaDescriptor) -> TableCreationResult:
        """
        Drop-and-create the table for *descriptor* in one unit of work.

        DDL failures roll back and come back as created=False with the
        error message rather than raising. When called inside an open
        unit of work the rollback only unwinds this call's savepoint.
        """
        table = descriptor.table_name
        try:
            with self.engine.unit_of_work() as cur:
                if self._table_exists(cur, table):
                    self.logger.warning(
                        "Table %s already exists; dropping and recreating", table
                    )
                    cur.execute(f"DROP TABLE IF EXISTS {self.fqn(table)}")
                cur.execute(self.build_create_statement(descriptor))
                for statement in self.build_index_statements(descriptor):
                    self._create_index(statement)
        except psycopg2.Error as e:
            self.logger.error("Failed to create table %s: %s", table, e)
            return TableCreationResult(table_name=table, created=False, error=str(e))

        self.logger.info(
            "Created table %s with %d inferred fields", table, len(descriptor.fields)
        )
        return TableCreationResult(
            table_name=table, created=True, fields_created=len(descriptor.fields)
        )

    def _create_index(self, statement: str) -> None:
        try:
            with self.engine.unit_of_work() as cur:
                cur.execute(statement)
        except psycopg2.Error as e:
            self.logger.warning("Index creation failed, continuing: %s", e)

    def drop_table(self, table_name: str) -> None:
        self.engine.execute(f"DROP TABLE IF EXISTS {self.fqn(table_name)}")
        self.logger.info("Dropped table %s (if it existed)", table_name)

    def cleanup_session_tables(self, session_id: str) -> None:
        """Drop every table owned by a session. Safe to call repeatedly."""
        self.drop_table(generate_table_name(session_id))

    def table_exists(self, table_name: str) -> bool:
        df = self.engine.query(
            """
            select exists (
                select 1 from information_schema.tables
                where table_schema = %s and table_name = %s
            )
            """,
            (self.schema, table_name),
        )
        return bool(not df.empty and df.iloc[0]["exists"])

    def _table_exists(self, cur, table_name: str) -> bool:
        cur.execute(
            """
            select exists (
                select 1 from information_schema.tables
                where table_schema = %s and table_name = %s
            )
            """,
            (self.schema, table_name),
        )
        row = cur.fetchone()
        return bool(row and row[0])

    def get_table_info(self, table_name: str) -> TableInfo:
        """Reflect the live column catalog; exists=False when absent."""
        df = self.engine.query(
            """
            select column_name, data_type, is_nullable, column_default
            from information_schema.columns
            where table_schema = %s and table_name = %s
            order by ordinal_position
            """,
            (self.schema, table_name),
        )
        if df.empty:
            return TableInfo(table_name=table_name, exists=False)

        columns = [
            ColumnInfo(
                name=row["column_name"],
                data_type=row["data_type"],
                nullable=row["is_nullable"] == "YES",
                default=row["column_default"],
            )
            for _, row in df.iterrows()
        ]
        return TableInfo(table_name=table_name, exists=True, columns=columns)

    def get_table_stats(self, table_name: str) -> TableStats:
        """Row count, on-disk size and first-row time. Raises NotFoundError if absent."""
        if not self.table_exists(table_name):
            raise NotFoundError(f"Table {table_name} does not exist")

        fqn = self.fqn(table_name)
        df = self.engine.query(
            f"""
            select
                (select count(*) from {fqn}) as total_rows,
                pg_size_pretty(pg_total_relation_size(%s::regclass)) as table_size,
                (select min(created_at) from {fqn}) as created
            """,
            (fqn,),
        )
        row = df.iloc[0]
        created = row["created"]
        return TableStats(
            table_name=table_name,
            total_rows=int(row["total_rows"]),
            table_size=str(row["table_size"]),
            created=None if pd.isna(created) else created,
        )

    def count_session_rows(self, table_name: str, session_id: str) -> int:
        df = self.engine.query(
            f'select count(*) as n from {self.fqn(table_name)} where "session_id" = %s',
            (session_id,),
        )
        return int(df.iloc[0]["n"]) if not df.empty else 0
