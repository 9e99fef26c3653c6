from __future__ import annotations

import json
from unittest.mock import MagicMock

import pandas as pd
import pytest

from apitable.ingest.schema_inference import FieldDefinition, FieldType, SchemaDescriptor
from apitable.tracking.schema_registry import SchemaRegistry


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.execute.return_value = None
    engine.query.return_value = pd.DataFrame(columns=["table_name", "field_definitions"])
    return engine


@pytest.fixture
def descriptor():
    return SchemaDescriptor(
        session_id="s1",
        table_name="data_s1",
        fields={
            "data_id": FieldDefinition(FieldType.NUMBER, nullable=False),
            "tags": FieldDefinition(FieldType.JSON),
        },
    )


class TestMemoryOnly:
    def test_save_and_get(self, descriptor):
        registry = SchemaRegistry()
        registry.save(descriptor)
        assert registry.get("s1") is descriptor

    def test_missing(self):
        assert SchemaRegistry().get("s1") is None

    def test_invalidate(self, descriptor):
        registry = SchemaRegistry()
        registry.save(descriptor)
        registry.invalidate("s1")
        assert registry.get("s1") is None

    def test_ensure_table_is_a_noop(self):
        SchemaRegistry().ensure_table()


class TestDatabaseBacked:
    def test_save_upserts(self, mock_engine, descriptor):
        SchemaRegistry(engine=mock_engine).save(descriptor)
        sql, params = mock_engine.execute.call_args[0]
        assert "insert into meta.data_table_schemas" in sql
        assert "on conflict (session_id) do update" in sql
        assert params["session_id"] == "s1"
        assert json.loads(params["field_definitions"]) == {
            "data_id": {"type": "number", "nullable": False},
            "tags": {"type": "json", "nullable": True},
        }

    def test_get_loads_and_caches(self, mock_engine):
        mock_engine.query.return_value = pd.DataFrame(
            {
                "table_name": ["data_s1"],
                "field_definitions": [{"flag": {"type": "boolean", "nullable": True}}],
            }
        )
        registry = SchemaRegistry(engine=mock_engine)
        descriptor = registry.get("s1")
        assert descriptor.table_name == "data_s1"
        assert descriptor.fields == {"flag": FieldDefinition(FieldType.BOOLEAN)}
        registry.get("s1")
        assert mock_engine.query.call_count == 1

    def test_get_accepts_json_text(self, mock_engine):
        mock_engine.query.return_value = pd.DataFrame(
            {
                "table_name": ["data_s1"],
                "field_definitions": ['{"n": {"type": "number", "nullable": false}}'],
            }
        )
        descriptor = SchemaRegistry(engine=mock_engine).get("s1")
        assert descriptor.fields["n"] == FieldDefinition(FieldType.NUMBER, nullable=False)

    def test_get_missing_row(self, mock_engine):
        assert SchemaRegistry(engine=mock_engine).get("s1") is None

    def test_delete(self, mock_engine, descriptor):
        registry = SchemaRegistry(engine=mock_engine)
        registry.save(descriptor)
        registry.delete("s1")
        sql, params = mock_engine.execute.call_args[0]
        assert sql.startswith("delete from meta.data_table_schemas")
        assert params == {"session_id": "s1"}
        assert registry.get("s1") is None

    def test_ensure_table(self, mock_engine):
        SchemaRegistry(engine=mock_engine).ensure_table()
        statements = [c[0][0] for c in mock_engine.execute.call_args_list]
        assert statements[0] == "create schema if not exists meta"
        assert "create table if not exists meta.data_table_schemas" in statements[1]
