"""
offsync - Offline-first operation queue and sync engine.

Records mutations while disconnected and reconciles them with a remote
origin once connectivity returns.
"""

from .config import OfflineManagerConfig, get_settings
from .conflict import ConflictResolver, ConflictStrategy, register_strategy
from .errors import (
    ConfigurationError,
    OffsyncError,
    OfflineError,
    StorageError,
    StorageFullError,
)
from .events import Event, EventKind
from .manager import OfflineManager
from .monitor import ConnectivityMonitor, StaticResourceMonitor
from .queue import OperationQueue
from .storage import SQLiteOperationLogStore
from .sync_engine import SyncEngine
from .transport import HttpRemoteOrigin
from .types import Operation, OperationKind, OperationStatus, Priority, SyncResult

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("offsync")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "ConfigurationError",
    "ConflictResolver",
    "ConflictStrategy",
    "ConnectivityMonitor",
    "Event",
    "EventKind",
    "HttpRemoteOrigin",
    "OfflineError",
    "OfflineManager",
    "OfflineManagerConfig",
    "OffsyncError",
    "Operation",
    "OperationKind",
    "OperationQueue",
    "OperationStatus",
    "Priority",
    "SQLiteOperationLogStore",
    "StaticResourceMonitor",
    "StorageError",
    "StorageFullError",
    "SyncEngine",
    "SyncResult",
    "get_settings",
    "register_strategy",
]
