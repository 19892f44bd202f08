"""Public storage interface for custom tool descriptors."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

from .errors import STORAGE_ERROR, UtilityHubError
from .models import ToolDescriptor

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import Config

__all__ = ["DescriptorStore", "StorageError", "create_store"]


class StorageError(UtilityHubError):
    """Raised when the descriptor store cannot complete an operation."""

    def __init__(self, message: str, *, details=None) -> None:
        super().__init__(STORAGE_ERROR, message, details=details)


@runtime_checkable
class DescriptorStore(Protocol):
    """Durable collection of custom tool descriptors keyed by name.

    Implementations are synchronous; callers on the event loop wrap them with
    :func:`asyncio.to_thread`.
    """

    def list(self) -> Sequence[ToolDescriptor]: ...

    def upsert(self, descriptor: ToolDescriptor) -> None: ...

    def delete(self, name: str) -> bool: ...

    def close(self) -> None: ...


def create_store(config: "Config") -> DescriptorStore:
    """Open the backend selected by ``config.use_db``."""

    if config.use_db:
        from .storage_sql import SqlDescriptorStore

        if not config.database_url:
            raise StorageError("use_db requires database_url")
        return SqlDescriptorStore(config.database_url)

    from .storage_lancedb import LanceDescriptorStore

    return LanceDescriptorStore(config.storage_dir)
