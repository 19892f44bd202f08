from __future__ import annotations

import pytest

from utility_hub import load_config
from utility_hub.models import ApiConfig, ParameterSchema, ToolDescriptor, ToolSchema
from utility_hub.storage import StorageError, create_store
from utility_hub.storage_lancedb import LanceDescriptorStore


def _build_config(tmp_path, **overrides):
    environ = {
        "UTILITY_HUB_STORAGE_DIR": str(tmp_path),
        "UTILITY_HUB_ENABLE_STDIO": "true",
        "UTILITY_HUB_ENABLE_HTTP": "false",
        "UTILITY_HUB_ENABLE_SSE": "false",
        "UTILITY_HUB_ENABLE_METRICS": "false",
    }
    for key, value in overrides.items():
        environ[f"UTILITY_HUB_{key.upper()}"] = str(value)
    return load_config(argv=[], environ=environ)


def _script_tool(name: str = "greeter", script: str = "return 'hi'") -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description="Greets people",
        body_schema=ToolSchema(
            properties={
                "name": ParameterSchema(description="Who to greet"),
                "times": ParameterSchema(kind="integer", minimum=1, maximum=3, default=1),
            },
            required=("name",),
        ),
        script=script,
    )


def test_create_store_defaults_to_lancedb(tmp_path) -> None:
    cfg = _build_config(tmp_path)

    store = create_store(cfg)

    assert isinstance(store, LanceDescriptorStore)
    assert store.list() == []


def test_create_and_list_roundtrip(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    api_tool = ToolDescriptor(
        name="weather",
        kind="api",
        query_schema=ToolSchema(properties={"city": ParameterSchema()}, required=("city",)),
        api=ApiConfig(url="https://weather.example.test", method="GET", headers={"X-Key": "k"}),
    )

    store.upsert(_script_tool())
    store.upsert(api_tool)

    listed = {descriptor.name: descriptor for descriptor in store.list()}
    assert listed == {"greeter": _script_tool(), "weather": api_tool}


def test_upsert_replaces_without_duplicates(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)

    store.upsert(_script_tool(script="return 1"))
    store.upsert(_script_tool(script="return 2"))

    rows = store.list()
    assert len(rows) == 1
    assert rows[0].script == "return 2"


def test_list_orders_newest_first(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    for name in ("alpha", "beta", "gamma"):
        store.upsert(_script_tool(name=name))

    assert [descriptor.name for descriptor in store.list()] == ["gamma", "beta", "alpha"]


def test_delete_missing_returns_false(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    store.upsert(_script_tool())

    assert store.delete("greeter") is True
    assert store.delete("greeter") is False
    assert store.list() == []


def test_names_with_quotes_are_escaped(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    store.upsert(_script_tool(name="o'brien"))

    assert store.delete("o'brien") is True


def test_persists_across_instances(tmp_path) -> None:
    LanceDescriptorStore(tmp_path).upsert(_script_tool())

    reopened = LanceDescriptorStore(tmp_path)

    assert [descriptor.name for descriptor in reopened.list()] == ["greeter"]


def test_use_db_without_url_is_rejected(tmp_path) -> None:
    cfg = _build_config(tmp_path)
    cfg.use_db = True

    with pytest.raises(StorageError):
        create_store(cfg)


class _FailingTable:
    """Wraps a real table and fails the selected operations."""

    def __init__(self, table, *, fail_read: bool = False, fail_adds: int = 0) -> None:
        self._table = table
        self.fail_read = fail_read
        self.fail_adds = fail_adds

    def to_arrow(self):
        if self.fail_read:
            raise OSError("disk unavailable")
        return self._table.to_arrow()

    def add(self, rows):
        if self.fail_adds:
            self.fail_adds -= 1
            raise OSError("disk full")
        return self._table.add(rows)

    def delete(self, where):
        return self._table.delete(where=where)


def test_read_failures_during_writes_raise_storage_error(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    store.upsert(_script_tool())
    store._table = _FailingTable(store._table, fail_read=True)

    with pytest.raises(StorageError):
        store.upsert(_script_tool(script="return 2"))
    with pytest.raises(StorageError):
        store.delete("greeter")


def test_failed_add_keeps_previous_definition(tmp_path) -> None:
    store = LanceDescriptorStore(tmp_path)
    store.upsert(_script_tool(script="return 1"))
    real_table = store._table
    store._table = _FailingTable(real_table, fail_adds=1)

    with pytest.raises(StorageError):
        store.upsert(_script_tool(script="return 2"))

    rows = store.list()
    assert [descriptor.script for descriptor in rows] == ["return 1"]
