from __future__ import annotations

import pytest
from sqlalchemy import inspect

from utility_hub.models import ApiConfig, ParameterSchema, ToolDescriptor, ToolSchema
from utility_hub.storage import DescriptorStore, StorageError
from utility_hub.storage_sql import SqlDescriptorStore


def _store(tmp_path) -> SqlDescriptorStore:
    return SqlDescriptorStore(f"sqlite:///{tmp_path / 'nested' / 'tools.db'}")


def _api_tool(name: str = "weather") -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description="Current weather",
        kind="api",
        query_schema=ToolSchema(properties={"city": ParameterSchema(description="City")}, required=("city",)),
        api=ApiConfig(url="https://weather.example.test/now", method="GET", headers={"X-Key": "k"}),
    )


def test_creates_schema_and_parent_directory(tmp_path) -> None:
    store = _store(tmp_path)
    try:
        assert (tmp_path / "nested" / "tools.db").exists()
        assert "custom_tools" in inspect(store.engine).get_table_names()
        assert isinstance(store, DescriptorStore)
    finally:
        store.close()


def test_upsert_and_list_roundtrip(tmp_path) -> None:
    store = _store(tmp_path)
    try:
        descriptor = _api_tool()
        store.upsert(descriptor)

        assert store.list() == [descriptor]
    finally:
        store.close()


def test_upsert_replaces_existing_row(tmp_path) -> None:
    store = _store(tmp_path)
    try:
        store.upsert(ToolDescriptor(name="echo", script="return 1"))
        store.upsert(ToolDescriptor(name="echo", script="return 2"))

        rows = store.list()
        assert len(rows) == 1
        assert rows[0].script == "return 2"
    finally:
        store.close()


def test_list_returns_newest_first(tmp_path) -> None:
    store = _store(tmp_path)
    try:
        for name in ("first", "second", "third"):
            store.upsert(ToolDescriptor(name=name, script="return None"))

        assert [descriptor.name for descriptor in store.list()] == ["third", "second", "first"]
    finally:
        store.close()


def test_delete_reports_whether_row_existed(tmp_path) -> None:
    store = _store(tmp_path)
    try:
        store.upsert(_api_tool())

        assert store.delete("weather") is True
        assert store.delete("weather") is False
        assert store.list() == []
    finally:
        store.close()


def test_rows_survive_reopen(tmp_path) -> None:
    first = _store(tmp_path)
    first.upsert(_api_tool())
    first.close()

    second = _store(tmp_path)
    try:
        assert [descriptor.name for descriptor in second.list()] == ["weather"]
    finally:
        second.close()


def test_unopenable_database_raises_storage_error(tmp_path) -> None:
    # A directory cannot be opened as a sqlite database file.
    with pytest.raises(StorageError):
        SqlDescriptorStore(f"sqlite:///{tmp_path}")
