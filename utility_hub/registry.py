"""Time-bounded cache of custom tool descriptors.

The cache holds one immutable :class:`RegistrySnapshot`.  Readers call
:meth:`RegistryCache.get` and never touch the store; :meth:`ensure_fresh`
replaces the snapshot when it is older than the staleness window or was
invalidated.  The store call runs in a worker thread and no lock is held
across it, so concurrent refreshes may both hit the store; the last one to
finish wins.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping

from . import metrics
from .errors import SchemaCompileError
from .logging import get_logger
from .models import ToolDescriptor
from .schema import SchemaValidator, compile_descriptor
from .storage import DescriptorStore, StorageError

logger = get_logger(__name__)

DEFAULT_STALENESS_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    """Descriptors and their compiled validators as of ``fetched_at``."""

    descriptors: tuple[ToolDescriptor, ...] = ()
    fetched_at: float | None = None
    validators: Mapping[str, SchemaValidator] = field(default_factory=lambda: MappingProxyType({}))
    failures: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def find(self, name: str) -> ToolDescriptor | None:
        for descriptor in self.descriptors:
            if descriptor.name == name:
                return descriptor
        return None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(descriptor.name for descriptor in self.descriptors)


def build_snapshot(descriptors: tuple[ToolDescriptor, ...], fetched_at: float | None) -> RegistrySnapshot:
    """Compile every descriptor; descriptors that fail to compile are kept with a reason."""

    validators: dict[str, SchemaValidator] = {}
    failures: dict[str, str] = {}
    for descriptor in descriptors:
        try:
            validators[descriptor.name] = compile_descriptor(descriptor)
        except SchemaCompileError as exc:
            failures[descriptor.name] = exc.message
            logger.warning(
                "registry.compile.failed",
                extra={"context": {"tool": descriptor.name, "reason": exc.message}},
            )
    return RegistrySnapshot(
        descriptors=descriptors,
        fetched_at=fetched_at,
        validators=MappingProxyType(validators),
        failures=MappingProxyType(failures),
    )


class RegistryCache:
    """Lazily refreshed view over a :class:`DescriptorStore`."""

    def __init__(
        self,
        store: DescriptorStore,
        *,
        staleness: float = DEFAULT_STALENESS_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if staleness < 0:
            raise ValueError("staleness must be non-negative")
        self._store = store
        self._staleness = float(staleness)
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot = RegistrySnapshot()
        self._invalidated = True
        self._last_refresh_error: str | None = None

    @property
    def store(self) -> DescriptorStore:
        return self._store

    @property
    def last_refresh_error(self) -> str | None:
        return self._last_refresh_error

    def get(self) -> RegistrySnapshot:
        with self._lock:
            return self._snapshot

    def is_fresh(self) -> bool:
        with self._lock:
            fetched_at = self._snapshot.fetched_at
            invalidated = self._invalidated
        if invalidated or fetched_at is None:
            return False
        return (self._clock() - fetched_at) < self._staleness

    def invalidate(self) -> None:
        with self._lock:
            self._invalidated = True

    async def ensure_fresh(self) -> RegistrySnapshot:
        """Refresh when stale; store failures keep the previous snapshot."""

        if self.is_fresh():
            return self.get()
        try:
            await self.refresh()
        except StorageError as exc:
            self._record_refresh_failure(exc)
        except Exception as exc:
            self._record_refresh_failure(exc, unexpected=True)
        return self.get()

    async def refresh(self) -> RegistrySnapshot:
        """Reload from the store unconditionally; store errors propagate."""

        with self._lock:
            self._invalidated = False
        metrics.record_operation("refresh")
        try:
            descriptors = tuple(await asyncio.to_thread(self._store.list))
        except Exception:
            self.invalidate()
            raise
        snapshot = build_snapshot(descriptors, self._clock())
        with self._lock:
            self._snapshot = snapshot
        self._last_refresh_error = None
        metrics.record_refresh("ok")
        logger.debug("registry.refresh.ok", extra={"context": {"tools": len(descriptors)}})
        return snapshot

    def _record_refresh_failure(self, exc: Exception, *, unexpected: bool = False) -> None:
        self._last_refresh_error = str(exc) or type(exc).__name__
        metrics.record_refresh("failed")
        logger.error(
            "registry.refresh.failed",
            extra={"context": {"error": self._last_refresh_error, "stale_tools": len(self.get().descriptors)}},
            exc_info=unexpected,
        )

    async def upsert(self, descriptor: ToolDescriptor) -> None:
        await asyncio.to_thread(self._store.upsert, descriptor)
        self.invalidate()

    async def delete(self, name: str) -> bool:
        removed = await asyncio.to_thread(self._store.delete, name)
        self.invalidate()
        return bool(removed)

    async def rename(self, old_name: str, descriptor: ToolDescriptor) -> None:
        """Replace ``old_name`` with ``descriptor``; the new row is written before the old one is removed."""

        await asyncio.to_thread(self._store.upsert, descriptor)
        if old_name and old_name != descriptor.name:
            await asyncio.to_thread(self._store.delete, old_name)
        self.invalidate()
