"""Operation queue.

Holds every outstanding operation in memory, mirrors each state change to
the operation log store before applying it in memory, and hands out
priority-ordered, dependency-respecting batches to the sync engine.

All public methods are atomic with respect to each other: they run under a
single re-entrant lock. Events are published after the lock is released so
handlers may call back into the queue.
"""

import copy
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from offsync.errors import InvalidTransitionError, OperationNotFoundError, StorageError
from offsync.events import EventBus, EventKind
from offsync.storage.base import OperationLogStore
from offsync.types import (
    ACTIVE_STATUSES,
    CANCELLED_ERROR,
    Operation,
    OperationStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

# Failure reasons are truncated before they are stored
MAX_ERROR_LENGTH = 500

PendingEvents = List[Tuple[EventKind, Dict[str, Any]]]


class OperationQueue:
    """Persistent priority queue of operations.

    Args:
        store: Operation log the queue writes through to.
        base_delay_ms: Base of the exponential retry backoff.
        max_delay_ms: Ceiling of the retry backoff.
        clock: Returns the current aware UTC time. Tests pass a manual clock.
    """

    def __init__(
        self,
        store: OperationLogStore,
        *,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 300_000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = EventBus()
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._clock = clock
        self._lock = threading.RLock()
        self._ops: Dict[str, Operation] = {}

    def configure_backoff(self, base_delay_ms: int, max_delay_ms: int) -> None:
        with self._lock:
            self.base_delay_ms = base_delay_ms
            self.max_delay_ms = max_delay_ms

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Delay before attempt ``retry_count`` returns to pending."""
        return min(self.base_delay_ms * (2**retry_count), self.max_delay_ms)

    # === Internals ===

    def _emit(self, pending: PendingEvents) -> None:
        for kind, payload in pending:
            self.events.publish(kind, **payload)

    def _require(self, op_id: str) -> Operation:
        op = self._ops.get(op_id)
        if op is None:
            raise OperationNotFoundError(op_id)
        return op

    def _transition(self, op: Operation, **changes: Any) -> None:
        """Write the change through to the store, then apply it in memory."""
        changes["updated_at"] = self._clock()
        self.store.update(op.id, changes)
        for name, value in changes.items():
            setattr(op, name, value)

    def _require_settling(self, op_id: str, action: str) -> Operation:
        """An operation whose outcome can be recorded: in flight or held by a conflict."""
        op = self._require(op_id)
        held = op.status == OperationStatus.PENDING and op.awaiting_resolution
        if op.status != OperationStatus.IN_PROGRESS and not held:
            raise InvalidTransitionError(op_id, op.status.value, action)
        return op

    def _fail_cancelled(self, op: Operation, pending: PendingEvents) -> Operation:
        self._transition(
            op,
            status=OperationStatus.FAILED,
            error=CANCELLED_ERROR,
            cancel_requested=False,
            awaiting_resolution=None,
            next_retry_at=None,
        )
        snapshot = copy.deepcopy(op)
        pending.append(
            (EventKind.OPERATION_FAILED, {"operation": snapshot, "error": CANCELLED_ERROR})
        )
        logger.info(f"Operation {op.id} cancelled")
        return snapshot

    def _dependencies_met(self, op: Operation) -> bool:
        # Completed operations are discarded, so a dependency still held is incomplete
        return all(dep not in self._ops for dep in op.dependencies)

    # === Loading ===

    def load(self) -> int:
        """Restore operations from the store.

        Operations left in flight by a crash go back to pending, or to
        failed if they had been cancelled while in flight.
        """
        pending: PendingEvents = []
        with self._lock:
            self._ops.clear()
            for op in self.store.load_pending():
                self._ops[op.id] = op
                if op.status != OperationStatus.IN_PROGRESS:
                    continue
                if op.cancel_requested:
                    self._fail_cancelled(op, pending)
                else:
                    self._transition(op, status=OperationStatus.PENDING)
                    logger.info(f"Recovered in-flight operation {op.id} as pending")
            count = len(self._ops)
        logger.debug(f"Loaded {count} operations from the operation log")
        return count

    # === Contract ===

    def enqueue(self, op: Operation) -> Operation:
        """Persist a new pending operation and make it eligible for dequeue.

        Raises:
            ValueError: if the operation is malformed or its id is already queued.
            StorageError: if the store cannot record it. Nothing is queued then.
        """
        if op.status != OperationStatus.PENDING:
            raise InvalidTransitionError(op.id, op.status.value, "enqueue")
        if not op.entity_type or not op.entity_id:
            raise ValueError("Operations need an entity_type and entity_id")
        if op.id in op.dependencies:
            raise ValueError(f"Operation {op.id} cannot depend on itself")
        if op.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        with self._lock:
            if op.id in self._ops:
                raise ValueError(f"Operation {op.id} is already queued")
            op.updated_at = self._clock()
            self.store.append(op)
            self._ops[op.id] = op
            snapshot = copy.deepcopy(op)

        logger.debug(
            f"Queued {op.kind.value} {op.entity_type}/{op.entity_id} "
            f"(id={op.id}, priority={op.priority.value})"
        )
        self._emit([(EventKind.OPERATION_QUEUED, {"operation": snapshot})])
        return snapshot

    def release_due(self) -> int:
        """Return retrying operations whose backoff has elapsed to pending."""
        released = 0
        with self._lock:
            now = self._clock()
            for op in self._ops.values():
                if op.status != OperationStatus.RETRYING:
                    continue
                if op.next_retry_at is not None and op.next_retry_at > now:
                    continue
                self._transition(
                    op, status=OperationStatus.PENDING, next_retry_at=None, error=None
                )
                released += 1
        return released

    def dequeue_batch(
        self,
        max_size: int,
        entity_types: Optional[Iterable[str]] = None,
        entity_id: Optional[str] = None,
    ) -> List[Operation]:
        """Select up to ``max_size`` eligible operations and mark them in flight.

        Eligible means pending, not held by a manual conflict, and with every
        dependency completed. Selection order is priority descending, then
        creation time, then insert order.

        Args:
            max_size: Largest batch to return.
            entity_types: Only consider these entity types (selective sync).
            entity_id: Only consider operations for this entity id.
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        types = set(entity_types) if entity_types is not None else None

        with self._lock:
            self.release_due()
            candidates = [
                op
                for op in self._ops.values()
                if op.status == OperationStatus.PENDING
                and not op.awaiting_resolution
                and self._dependencies_met(op)
                and (types is None or op.entity_type in types)
                and (entity_id is None or op.entity_id == entity_id)
            ]
            candidates.sort(key=Operation.sort_key)

            now = self._clock()
            batch: List[Operation] = []
            for op in candidates[:max_size]:
                try:
                    self._transition(op, status=OperationStatus.IN_PROGRESS, last_attempt_at=now)
                except StorageError:
                    if not batch:
                        raise
                    logger.error(
                        f"Storage failed while dequeuing; sending {len(batch)} operations",
                        exc_info=True,
                    )
                    break
                batch.append(copy.deepcopy(op))
        return batch

    def ack(self, op_id: str, superseded_by: Optional[str] = None) -> Operation:
        """Record success. The operation is completed and removed from the store.

        A cancelled in-flight operation is failed with "cancelled" instead.
        """
        pending: PendingEvents = []
        with self._lock:
            op = self._require_settling(op_id, "acknowledge")
            if op.cancel_requested:
                snapshot = self._fail_cancelled(op, pending)
            else:
                self.store.remove(op_id)
                del self._ops[op_id]
                op.status = OperationStatus.COMPLETED
                op.superseded_by = superseded_by
                op.awaiting_resolution = None
                op.error = None
                op.updated_at = self._clock()
                snapshot = copy.deepcopy(op)
                pending.append((EventKind.OPERATION_COMPLETED, {"operation": snapshot}))
        self._emit(pending)
        return snapshot

    def nack(self, op_id: str, error: str, retry_after: Optional[float] = None) -> Operation:
        """Record a transient failure and schedule a retry with backoff.

        Once ``retry_count`` has reached ``max_retries`` the operation fails
        instead, so ``retry_count`` never exceeds ``max_retries``.

        Args:
            op_id: In-flight operation id.
            error: Failure reason.
            retry_after: Minimum delay in seconds requested by the origin.
        """
        error = (error or "transient error")[:MAX_ERROR_LENGTH]
        pending: PendingEvents = []
        with self._lock:
            op = self._require(op_id)
            if op.status != OperationStatus.IN_PROGRESS:
                raise InvalidTransitionError(op_id, op.status.value, "nack")
            if op.cancel_requested:
                snapshot = self._fail_cancelled(op, pending)
            elif op.retry_count < op.max_retries:
                retry_count = op.retry_count + 1
                delay_ms = self.backoff_delay_ms(retry_count)
                if retry_after:
                    delay_ms = max(delay_ms, int(retry_after * 1000))
                self._transition(
                    op,
                    status=OperationStatus.RETRYING,
                    retry_count=retry_count,
                    error=error,
                    next_retry_at=self._clock() + timedelta(milliseconds=delay_ms),
                )
                snapshot = copy.deepcopy(op)
                pending.append(
                    (
                        EventKind.OPERATION_RETRYING,
                        {"operation": snapshot, "error": error, "delay_ms": delay_ms},
                    )
                )
                logger.info(
                    f"Operation {op_id} retry {retry_count}/{op.max_retries} in {delay_ms}ms: {error}"
                )
            else:
                self._transition(op, status=OperationStatus.FAILED, error=error, next_retry_at=None)
                snapshot = copy.deepcopy(op)
                pending.append((EventKind.OPERATION_FAILED, {"operation": snapshot, "error": error}))
                logger.warning(
                    f"Operation {op_id} failed after {op.retry_count} retries: {error}"
                )
        self._emit(pending)
        return snapshot

    def fail(self, op_id: str, reason: str) -> Operation:
        """Fail an operation immediately, bypassing retry (permanent errors)."""
        reason = (reason or "permanent error")[:MAX_ERROR_LENGTH]
        pending: PendingEvents = []
        with self._lock:
            op = self._require_settling(op_id, "fail")
            if op.cancel_requested:
                snapshot = self._fail_cancelled(op, pending)
            else:
                self._transition(
                    op,
                    status=OperationStatus.FAILED,
                    error=reason,
                    awaiting_resolution=None,
                    next_retry_at=None,
                )
                snapshot = copy.deepcopy(op)
                pending.append((EventKind.OPERATION_FAILED, {"operation": snapshot, "error": reason}))
                logger.warning(f"Operation {op_id} failed permanently: {reason}")
        self._emit(pending)
        return snapshot

    def requeue(
        self, op_id: str, payload: Optional[Dict[str, Any]], base_version: Any = None
    ) -> Operation:
        """Return a settled operation to pending with a resolved payload."""
        pending: PendingEvents = []
        with self._lock:
            op = self._require_settling(op_id, "requeue")
            if op.cancel_requested:
                snapshot = self._fail_cancelled(op, pending)
            else:
                self._transition(
                    op,
                    status=OperationStatus.PENDING,
                    payload=payload,
                    base_version=base_version,
                    awaiting_resolution=None,
                    error=None,
                )
                snapshot = copy.deepcopy(op)
        self._emit(pending)
        return snapshot

    def hold(self, op_id: str, conflict_id: str) -> Operation:
        """Park an in-flight operation as pending until its conflict is resolved."""
        pending: PendingEvents = []
        with self._lock:
            op = self._require(op_id)
            if op.status != OperationStatus.IN_PROGRESS:
                raise InvalidTransitionError(op_id, op.status.value, "hold")
            if op.cancel_requested:
                snapshot = self._fail_cancelled(op, pending)
            else:
                self._transition(
                    op, status=OperationStatus.PENDING, awaiting_resolution=conflict_id
                )
                snapshot = copy.deepcopy(op)
        self._emit(pending)
        return snapshot

    def release_hold(self, op_id: str) -> Operation:
        """Make a held operation eligible again without resolving its conflict.

        Used when the conflict holding it no longer exists; the next exchange
        reports the divergence afresh.
        """
        with self._lock:
            op = self._require(op_id)
            if op.status != OperationStatus.PENDING or not op.awaiting_resolution:
                raise InvalidTransitionError(op_id, op.status.value, "release")
            self._transition(op, awaiting_resolution=None)
            snapshot = copy.deepcopy(op)
        logger.info(f"Released operation {op_id} from an unknown conflict hold")
        return snapshot

    def release_in_flight(self, op_ids: Iterable[str]) -> int:
        """Return in-flight operations of an aborted exchange to pending.

        Same outcome as crash recovery in load(): cancelled operations fail
        instead. Ids that are no longer in flight are skipped.
        """
        pending: PendingEvents = []
        released = 0
        with self._lock:
            for op_id in op_ids:
                op = self._ops.get(op_id)
                if op is None or op.status != OperationStatus.IN_PROGRESS:
                    continue
                try:
                    if op.cancel_requested:
                        self._fail_cancelled(op, pending)
                    else:
                        self._transition(op, status=OperationStatus.PENDING)
                except StorageError:
                    # The log still records it in flight, which load() recovers
                    logger.error(
                        f"Could not persist release of operation {op_id}", exc_info=True
                    )
                    op.status = OperationStatus.PENDING
                released += 1
        if released:
            logger.info(f"Returned {released} in-flight operations to pending")
        self._emit(pending)
        return released

    def cancel(self, op_id: str) -> Operation:
        """Cancel a pending or retrying operation.

        An in-flight operation is only flagged; its response is discarded
        when it arrives.
        """
        pending: PendingEvents = []
        with self._lock:
            op = self._require(op_id)
            if op.status in (OperationStatus.PENDING, OperationStatus.RETRYING):
                snapshot = self._fail_cancelled(op, pending)
            elif op.status == OperationStatus.IN_PROGRESS:
                self._transition(op, cancel_requested=True)
                snapshot = copy.deepcopy(op)
                logger.info(f"Operation {op_id} flagged for cancellation while in flight")
            else:
                raise InvalidTransitionError(op_id, op.status.value, "cancel")
        self._emit(pending)
        return snapshot

    def retry(self, op_id: str) -> Operation:
        """Re-enter a failed operation as pending with a fresh retry budget."""
        with self._lock:
            op = self._require(op_id)
            if op.status != OperationStatus.FAILED:
                raise InvalidTransitionError(op_id, op.status.value, "retry")
            self._transition(
                op,
                status=OperationStatus.PENDING,
                retry_count=0,
                error=None,
                next_retry_at=None,
                cancel_requested=False,
                awaiting_resolution=None,
            )
            snapshot = copy.deepcopy(op)
        logger.info(f"Operation {op_id} requeued for retry")
        return snapshot

    def clear_failed(self, op_ids: Optional[Iterable[str]] = None) -> int:
        """Remove failed operations, all of them or the given ids."""
        with self._lock:
            wanted = set(op_ids) if op_ids is not None else None
            doomed = [
                op.id
                for op in self._ops.values()
                if op.status == OperationStatus.FAILED and (wanted is None or op.id in wanted)
            ]
            for op_id in doomed:
                self.store.remove(op_id)
                del self._ops[op_id]
        if doomed:
            logger.info(f"Cleared {len(doomed)} failed operations")
        return len(doomed)

    def prune_failed(self, retention: timedelta) -> int:
        """Drop failed operations untouched for longer than ``retention``."""
        with self._lock:
            cutoff = self._clock() - retention
            removed = self.store.prune_failed(cutoff)
            for op_id in [
                op.id
                for op in self._ops.values()
                if op.status == OperationStatus.FAILED
                and (op.updated_at or op.created_at) < cutoff
            ]:
                del self._ops[op_id]
        return removed

    # === Inspection ===

    def get(self, op_id: str) -> Optional[Operation]:
        with self._lock:
            op = self._ops.get(op_id)
            return copy.deepcopy(op) if op else None

    def list_pending(self) -> List[Operation]:
        """Outstanding operations (pending, in flight, retrying) in dequeue order."""
        with self._lock:
            ops = [op for op in self._ops.values() if op.status in ACTIVE_STATUSES]
            ops.sort(key=Operation.sort_key)
            return [copy.deepcopy(op) for op in ops]

    def list_failed(self) -> List[Operation]:
        with self._lock:
            ops = [op for op in self._ops.values() if op.status == OperationStatus.FAILED]
            ops.sort(key=lambda op: op.updated_at or op.created_at, reverse=True)
            return [copy.deepcopy(op) for op in ops]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in OperationStatus}
            for op in self._ops.values():
                counts[op.status.value] += 1
            return counts

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for op in self._ops.values() if op.status in ACTIVE_STATUSES)

    @property
    def failed_count(self) -> int:
        with self._lock:
            return sum(1 for op in self._ops.values() if op.status == OperationStatus.FAILED)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)
