"""Operation log storage for offsync."""

from .base import PATCHABLE_FIELDS, OperationLogStore
from .sqlite import SQLiteOperationLogStore

__all__ = ["OperationLogStore", "PATCHABLE_FIELDS", "SQLiteOperationLogStore"]
