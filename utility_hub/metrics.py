from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("list_tools", "call_tool", "refresh", "upsert", "delete")
_DEFAULT_REFRESH_OUTCOMES = ("ok", "failed")

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    refreshes: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_refreshes", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._refreshes: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_refresh(self, outcome: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = outcome.strip().lower() or "unknown"
        with self._lock:
            self._refreshes[key] += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations: dict[str, int] = {name: int(self._operations.get(name, 0)) for name in _DEFAULT_OPERATIONS}
            for name, value in self._operations.items():
                if name not in operations:
                    operations[name] = int(value)
            errors = {code: int(value) for code, value in self._errors.items()}
            refreshes: dict[str, int] = {
                outcome: int(self._refreshes.get(outcome, 0)) for outcome in _DEFAULT_REFRESH_OUTCOMES
            }
            for outcome, value in self._refreshes.items():
                if outcome not in refreshes:
                    refreshes[outcome] = int(value)
            uptime = max(monotonic() - self._started_at, 0.0)
        return MetricsSnapshot(operations=operations, errors=errors, refreshes=refreshes, uptime_seconds=uptime)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._refreshes.clear()
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_refresh(outcome: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_refresh(outcome, count=count)


def format_prometheus(snapshot: MetricsSnapshot, *, builtin_tools_current: int, custom_tools_current: int) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP utility_hub_ops_total Total operations executed by type.")
    lines.append("# TYPE utility_hub_ops_total counter")
    for name in sorted(snapshot.operations):
        lines.append(f'utility_hub_ops_total{{op="{name}"}} {snapshot.operations[name]}')

    lines.append("# HELP utility_hub_errors_total Total failure results returned, grouped by error code.")
    lines.append("# TYPE utility_hub_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            lines.append(f'utility_hub_errors_total{{code="{code}"}} {snapshot.errors[code]}')
    else:
        lines.append('utility_hub_errors_total{code="none"} 0')

    lines.append("# HELP utility_hub_registry_refreshes_total Registry refresh attempts by outcome.")
    lines.append("# TYPE utility_hub_registry_refreshes_total counter")
    for outcome in sorted(snapshot.refreshes):
        lines.append(f'utility_hub_registry_refreshes_total{{outcome="{outcome}"}} {snapshot.refreshes[outcome]}')

    lines.append("# HELP utility_hub_builtin_tools_current Builtin tools compiled into the process.")
    lines.append("# TYPE utility_hub_builtin_tools_current gauge")
    lines.append(f"utility_hub_builtin_tools_current {builtin_tools_current}")

    lines.append("# HELP utility_hub_custom_tools_current Custom tools in the cached registry snapshot.")
    lines.append("# TYPE utility_hub_custom_tools_current gauge")
    lines.append(f"utility_hub_custom_tools_current {custom_tools_current}")

    lines.append("# HELP utility_hub_uptime_seconds Server uptime in seconds.")
    lines.append("# TYPE utility_hub_uptime_seconds gauge")
    lines.append(f"utility_hub_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
