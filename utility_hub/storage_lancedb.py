"""LanceDB-backed local store for custom tool descriptors."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from threading import RLock
from typing import Any, Mapping

import lancedb
import pyarrow as pa

from .logging import get_logger
from .models import ToolDescriptor
from .storage import StorageError

logger = get_logger(__name__)

_TABLE_NAME = "custom_tools"

_TOOLS_SCHEMA = pa.schema(
    [
        pa.field("name", pa.string()),
        pa.field("description", pa.string()),
        pa.field("custom_type", pa.string()),
        pa.field("input_schema", pa.large_string()),
        pa.field("query_schema", pa.large_string()),
        pa.field("api_config", pa.large_string()),
        pa.field("custom_logic", pa.large_string()),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
        pa.field("updated_at", pa.timestamp("us", tz="UTC")),
    ]
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode_json(payload: Any) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _decode_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _format_filter(field: str, value: str) -> str:
    escaped = value.replace("'", "''")
    return f"{field} = '{escaped}'"


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class LanceDescriptorStore:
    """Persists descriptors as rows of a single LanceDB table under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        try:
            self._db = lancedb.connect(str(self._root))
        except Exception as exc:  # pragma: no cover - environment specific
            raise StorageError("Unable to open LanceDB database", details={"path": str(self._root)}) from exc
        self._table = self._ensure_table()

    @synchronized
    def list(self) -> list[ToolDescriptor]:
        try:
            rows = self._table.to_arrow().to_pylist()
        except Exception as exc:
            raise StorageError("Unable to read custom tools") from exc
        rows.sort(key=lambda row: row.get("created_at") or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        descriptors: list[ToolDescriptor] = []
        for row in rows:
            try:
                descriptors.append(self._descriptor_from_row(row))
            except (ValueError, TypeError):
                logger.warning("Skipping unreadable custom tool row '%s'", row.get("name"), exc_info=True)
        return descriptors

    @synchronized
    def upsert(self, descriptor: ToolDescriptor) -> None:
        try:
            existing = self._fetch_row(descriptor.name)
            created_at = existing.get("created_at") if existing else None
            record = self._serialize(descriptor, created_at)
            if existing is not None:
                self._delete_row(descriptor.name)
        except Exception as exc:
            raise StorageError(f"Unable to save custom tool '{descriptor.name}'") from exc
        try:
            self._table.add([record])
        except Exception as exc:
            if existing is not None:
                self._restore_row(existing)
            raise StorageError(f"Unable to save custom tool '{descriptor.name}'") from exc

    @synchronized
    def delete(self, name: str) -> bool:
        try:
            if self._fetch_row(name) is None:
                return False
            self._delete_row(name)
        except Exception as exc:
            raise StorageError(f"Unable to delete custom tool '{name}'") from exc
        return True

    def close(self) -> None:
        """LanceDB connections hold no server-side resources."""

    def _ensure_table(self):
        table_names = set(self._db.table_names())
        if _TABLE_NAME in table_names:
            table = self._db.open_table(_TABLE_NAME)
            missing = [field.name for field in _TOOLS_SCHEMA if field.name not in table.schema.names]
            if missing:
                raise StorageError("Existing LanceDB table missing required columns", details={"missing": missing})
            return table
        return self._db.create_table(_TABLE_NAME, schema=_TOOLS_SCHEMA)

    def _serialize(self, descriptor: ToolDescriptor, created_at: datetime | None) -> dict[str, Any]:
        wire = descriptor.to_dict()
        timestamp = _now()
        return {
            "name": descriptor.name,
            "description": descriptor.description,
            "custom_type": wire["customType"],
            "input_schema": _encode_json(wire["inputSchema"]),
            "query_schema": _encode_json(wire["querySchema"]),
            "api_config": _encode_json(wire["apiConfig"]),
            "custom_logic": descriptor.script,
            "created_at": created_at or timestamp,
            "updated_at": timestamp,
        }

    def _descriptor_from_row(self, row: Mapping[str, Any]) -> ToolDescriptor:
        return ToolDescriptor.from_dict(
            {
                "name": row.get("name"),
                "description": row.get("description"),
                "customType": row.get("custom_type"),
                "inputSchema": _decode_json(row.get("input_schema")),
                "querySchema": _decode_json(row.get("query_schema")),
                "apiConfig": _decode_json(row.get("api_config")),
                "customLogic": row.get("custom_logic"),
            }
        )

    def _fetch_row(self, name: str) -> dict[str, Any] | None:
        for row in self._table.to_arrow().to_pylist():
            if row.get("name") == name:
                return row
        return None

    def _delete_row(self, name: str) -> None:
        self._table.delete(where=_format_filter("name", name))

    def _restore_row(self, row: dict[str, Any]) -> None:
        try:
            self._table.add([row])
        except Exception:
            logger.error("Failed to restore custom tool '%s' after a failed save", row.get("name"), exc_info=True)
