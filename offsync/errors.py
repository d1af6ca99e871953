"""Error hierarchy for offsync.

Every exception raised by the engine derives from OffsyncError so that
collaborators can catch engine failures with a single except clause.
"""

from typing import Optional


class OffsyncError(Exception):
    """Base for all offsync errors."""

    pass


class StorageError(OffsyncError):
    """Raised by the operation log store when a write cannot be made durable."""

    pass


class StorageFullError(StorageError):
    """Raised when the storage medium or configured quota is exhausted.

    Also raised by the offline manager when storage status is critical and a
    new operation is enqueued.
    """

    pass


class OfflineError(OffsyncError):
    """Raised when a manual sync is requested without connectivity."""

    pass


class ConfigurationError(OffsyncError, ValueError):
    """Raised when configure() receives an invalid option."""

    pass


class OperationNotFoundError(OffsyncError, KeyError):
    """Raised when an operation id is not held by the queue or store."""

    def __init__(self, op_id: str):
        self.op_id = op_id
        super().__init__(f"Operation not found: {op_id}")

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransitionError(OffsyncError):
    """Raised when an operation is asked to move to a state it cannot reach."""

    def __init__(self, op_id: str, status: str, action: str):
        self.op_id = op_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} operation {op_id} while {status}")


class ConflictNotFoundError(OffsyncError, KeyError):
    """Raised when a resolution names a conflict the resolver does not hold."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No open conflict for: {key}")

    def __str__(self) -> str:
        return self.args[0]


class RemoteError(OffsyncError):
    """Raised by a remote origin when a batch could not be exchanged."""

    pass


class TransientRemoteError(RemoteError):
    """A retryable failure (timeout, connection reset, 5xx, 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after  # seconds, when the origin supplied one
        super().__init__(message)
