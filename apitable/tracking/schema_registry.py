from __future__ import annotations

import json
import logging
from typing import Any

from apitable.ingest.schema_inference import FieldDefinition, SchemaDescriptor


class SchemaRegistry:
    """
    Durable store of one SchemaDescriptor per session.

    When backed by a PostgresEngine, descriptors live in
    meta.data_table_schemas, apart from the session's bulk rows. When no
    engine is provided, operates in memory-only mode (useful for testing
    or preview workflows).
    """

    TABLE_NAME = "meta.data_table_schemas"

    def __init__(self, engine: Any | None = None) -> None:
        self.engine = engine
        self.logger = logging.getLogger("schema_registry")
        self._cache: dict[str, SchemaDescriptor] = {}

    def ensure_table(self) -> None:
        if self.engine is None:
            return
        self.engine.execute("create schema if not exists meta")
        self.engine.execute(
            f"""
            create table if not exists {self.TABLE_NAME} (
                id bigserial primary key,
                session_id varchar(255) not null unique,
                table_name varchar(255) not null,
                field_definitions jsonb not null,
                created_at timestamptz not null default now(),
                updated_at timestamptz not null default now()
            )
            """
        )

    def get(self, session_id: str) -> SchemaDescriptor | None:
        """Look up the descriptor for a session, or None if never inferred."""
        if session_id in self._cache:
            return self._cache[session_id]
        if self.engine is None:
            return None

        df = self.engine.query(
            f"""
            select table_name, field_definitions
            from {self.TABLE_NAME}
            where session_id = %(session_id)s
            """,
            {"session_id": session_id},
        )
        if df.empty:
            return None

        row = df.iloc[0]
        raw = row["field_definitions"]
        definitions = json.loads(raw) if isinstance(raw, str) else raw
        descriptor = SchemaDescriptor(
            session_id=session_id,
            table_name=row["table_name"],
            fields={
                name: FieldDefinition.from_dict(fd) for name, fd in definitions.items()
            },
        )
        self._cache[session_id] = descriptor
        return descriptor

    def save(self, descriptor: SchemaDescriptor) -> None:
        """Insert or replace the session's descriptor."""
        if self.engine is not None:
            self.engine.execute(
                f"""
                insert into {self.TABLE_NAME}
                    (session_id, table_name, field_definitions)
                values
                    (%(session_id)s, %(table_name)s, %(field_definitions)s)
                on conflict (session_id) do update set
                    table_name = excluded.table_name,
                    field_definitions = excluded.field_definitions,
                    updated_at = now()
                """,
                {
                    "session_id": descriptor.session_id,
                    "table_name": descriptor.table_name,
                    "field_definitions": json.dumps(descriptor.fields_to_dict()),
                },
            )
        self._cache[descriptor.session_id] = descriptor
        self.logger.info(
            "Saved schema for session %s (%d fields)",
            descriptor.session_id,
            len(descriptor.fields),
        )

    def invalidate(self, session_id: str) -> None:
        """Forget a cached descriptor whose write was rolled back."""
        self._cache.pop(session_id, None)

    def delete(self, session_id: str) -> None:
        self._cache.pop(session_id, None)
        if self.engine is None:
            return
        self.engine.execute(
            f"delete from {self.TABLE_NAME} where session_id = %(session_id)s",
            {"session_id": session_id},
        )
