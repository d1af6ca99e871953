"""Operation log store interface."""

from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from offsync.types import Operation, StorageInfo, SyncHistoryEntry

# Operation fields update() accepts in a patch
PATCHABLE_FIELDS = frozenset(
    {
        "payload",
        "priority",
        "retry_count",
        "max_retries",
        "status",
        "dependencies",
        "error",
        "base_version",
        "metadata",
        "next_retry_at",
        "last_attempt_at",
        "cancel_requested",
        "awaiting_resolution",
        "superseded_by",
        "updated_at",
    }
)


@runtime_checkable
class OperationLogStore(Protocol):
    """Durable persistence for queued operations.

    An operation recorded with ``append`` must reappear in ``load_pending``
    after a restart until it is removed. Each write is atomic: a failed write
    leaves no partial record behind and raises ``StorageError``.
    """

    @abstractmethod
    def append(self, op: Operation) -> None:
        """Persist a new operation."""
        ...

    @abstractmethod
    def update(self, op_id: str, patch: Mapping[str, Any]) -> None:
        """Apply a patch of PATCHABLE_FIELDS to one operation."""
        ...

    @abstractmethod
    def remove(self, op_id: str) -> bool:
        """Delete one operation. Returns False if it was not stored."""
        ...

    @abstractmethod
    def load_pending(self) -> List[Operation]:
        """Load every stored operation that is not completed."""
        ...

    @abstractmethod
    def get(self, op_id: str) -> Optional[Operation]:
        ...

    @abstractmethod
    def get_storage_info(self) -> StorageInfo:
        ...

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        ...

    @abstractmethod
    def prune_failed(self, older_than: datetime) -> int:
        """Delete failed operations last touched before ``older_than``."""
        ...

    @abstractmethod
    def save_setting(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def load_setting(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def record_sync_history(self, entry: SyncHistoryEntry, keep: int = 100) -> None:
        ...

    @abstractmethod
    def load_sync_history(self, limit: int = 100) -> List[SyncHistoryEntry]:
        ...

    @abstractmethod
    def clear_sync_history(self) -> int:
        ...

    @abstractmethod
    def close(self) -> None:
        ...
