"""Sync engine.

Runs sync cycles against the remote origin: dequeue a batch from the
operation queue, push it, and settle every operation from its per-operation
result. Conflicts are handed to the conflict resolver and its decision is
applied back to the queue here.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Iterable, List, Optional, Tuple

from offsync.conflict import ConflictResolver
from offsync.errors import StorageError, TransientRemoteError
from offsync.events import EventBus, EventKind
from offsync.queue import OperationQueue
from offsync.storage.base import OperationLogStore
from offsync.transport import RemoteOrigin
from offsync.types import (
    ConnectionQuality,
    HealthIssue,
    HealthReport,
    Operation,
    OperationStatus,
    RemoteState,
    ResolutionAction,
    ResolutionOutcome,
    SyncHealth,
    SyncHistoryEntry,
    SyncResult,
    utc_now,
)

logger = logging.getLogger(__name__)

# Sync cycles kept in history
HISTORY_LIMIT = 100

# Upper bound on batches drained in one sync_all() cycle
MAX_BATCHES_PER_CYCLE = 100

# Health thresholds
LARGE_QUEUE_THRESHOLD = 100
STALE_SYNC_AFTER = timedelta(hours=24)
REPEATED_FAILURE_THRESHOLD = 3

# Transport timeout ceiling when adapting to a poor connection (seconds)
MAX_TRANSPORT_TIMEOUT = 60.0


class SyncEngine:
    """Executes batched exchanges with the remote origin.

    Only one cycle runs at a time. The lock is taken with a non-blocking
    acquire, so a caller that loses the race returns immediately with a
    skipped result instead of waiting.

    Args:
        queue: Source of batches.
        resolver: Decides conflicts reported by the origin.
        remote: The origin. Cycles fail with a sync error while it is None.
        store: Where sync history is persisted, if anywhere.
        batch_size: Operations per pushed batch.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        queue: OperationQueue,
        resolver: ConflictResolver,
        remote: Optional[RemoteOrigin] = None,
        store: Optional[OperationLogStore] = None,
        *,
        batch_size: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.queue = queue
        self.resolver = resolver
        self.remote = remote
        self.store = store
        self.events = EventBus()
        self._clock = clock
        self._lock = threading.Lock()
        self._base_batch_size = batch_size
        self.batch_size = batch_size
        self._base_timeout = remote.timeout if remote is not None else None
        self._consecutive_failures = 0
        self._history: Deque[SyncHistoryEntry] = deque(maxlen=HISTORY_LIMIT)
        self.last_sync_time: Optional[datetime] = None

        if store is not None:
            # Newest first
            self._history.extend(store.load_sync_history(HISTORY_LIMIT))
            for entry in self._history:
                if entry.success:
                    self.last_sync_time = entry.timestamp
                    break

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def set_batch_size(self, batch_size: int) -> None:
        self._base_batch_size = batch_size
        self.batch_size = batch_size

    def adapt_to_connection(self, quality: ConnectionQuality) -> None:
        """Halve the batch and double the timeout on a poor connection; restore otherwise."""
        if quality == ConnectionQuality.POOR:
            self.batch_size = max(1, self._base_batch_size // 2)
            if self.remote is not None and self._base_timeout is not None:
                self.remote.timeout = min(self._base_timeout * 2, MAX_TRANSPORT_TIMEOUT)
        else:
            self.batch_size = self._base_batch_size
            if self.remote is not None and self._base_timeout is not None:
                self.remote.timeout = self._base_timeout

    # === Cycles ===

    def sync_pending_operations(
        self, entity_types: Optional[Iterable[str]] = None
    ) -> SyncResult:
        """Run one cycle over a single batch."""
        return self._run(drain=False, entity_types=entity_types)

    def sync_all(self, entity_types: Optional[Iterable[str]] = None) -> SyncResult:
        """Run one cycle that drains every eligible operation batch by batch."""
        return self._run(drain=True, entity_types=entity_types)

    def sync_entity(self, entity_type: str, entity_id: str) -> SyncResult:
        """Run one cycle limited to the operations of a single entity."""
        return self._run(drain=True, entity_types=[entity_type], entity_id=entity_id)

    def _run(
        self,
        drain: bool,
        entity_types: Optional[Iterable[str]] = None,
        entity_id: Optional[str] = None,
    ) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            logger.debug("Sync already in progress, skipping")
            return SyncResult(skipped=True)
        try:
            return self._cycle(drain, list(entity_types) if entity_types else None, entity_id)
        finally:
            self._lock.release()

    def _cycle(
        self, drain: bool, entity_types: Optional[List[str]], entity_id: Optional[str]
    ) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(timestamp=self._clock())
        batch_error: Optional[str] = None
        batch: List[Operation] = []
        self.events.publish(EventKind.SYNC_START, batch_size=self.batch_size)

        try:
            if self.remote is None:
                batch_error = "No remote origin configured"
                result.errors.append(batch_error)
            else:
                for _ in range(MAX_BATCHES_PER_CYCLE if drain else 1):
                    batch = self.queue.dequeue_batch(self.batch_size, entity_types, entity_id)
                    if not batch:
                        break
                    batch_result, batch_error = self._exchange(batch)
                    result.merge(batch_result)
                    if batch_error:
                        break
        except Exception as e:
            # Storage errors and anything unexpected end the cycle and propagate.
            # Whatever the batch left unsettled goes back to pending first.
            self.queue.release_in_flight(op.id for op in batch)
            result.errors.append(str(e))
            result.duration_ms = (time.monotonic() - started) * 1000
            self._consecutive_failures += 1
            self._record_history(result)
            if isinstance(e, StorageError):
                logger.error(f"Sync cycle aborted by storage failure: {e}")
            else:
                logger.error(f"Sync cycle failed: {e}", exc_info=True)
            self.events.publish(EventKind.SYNC_ERROR, error=str(e), duration=result.duration_ms)
            raise

        result.duration_ms = (time.monotonic() - started) * 1000
        self._record_history(result)

        if batch_error:
            self._consecutive_failures += 1
            logger.warning(f"Sync cycle failed: {batch_error}")
            self.events.publish(EventKind.SYNC_ERROR, error=batch_error, duration=result.duration_ms)
        else:
            self._consecutive_failures = 0
            self.last_sync_time = result.timestamp
            logger.info(
                f"Sync complete: synced={result.operations_synced}, "
                f"failed={result.operations_failed}, retried={result.operations_retried}, "
                f"conflicts={result.conflict_count}, bytes={result.bytes_synced}"
            )
            self.events.publish(
                EventKind.SYNC_COMPLETE,
                duration=result.duration_ms,
                bytes_synced=result.bytes_synced,
                result=result,
            )
        return result

    def _exchange(self, batch: List[Operation]) -> Tuple[SyncResult, Optional[str]]:
        """Push one batch and settle each operation from its result."""
        result = SyncResult()
        try:
            response = self.remote.push(batch)
        except TransientRemoteError as e:
            for op in batch:
                self._count(self.queue.nack(op.id, str(e), e.retry_after), result)
            result.errors.append(str(e))
            return result, str(e)

        result.bytes_synced += response.bytes_sent + response.bytes_received
        for op in batch:
            item = response.results.get(op.id)
            if item is None:
                settled = self.queue.nack(op.id, "Origin returned no result for this operation")
            elif item.status == "ok":
                settled = self.queue.ack(op.id)
            elif item.status == "conflict":
                settled = self._settle_conflict(op, item, result)
            elif item.status == "transientError":
                settled = self.queue.nack(op.id, item.error or "transient error", item.retry_after)
            else:
                settled = self.queue.fail(op.id, item.reason)
            self._count(settled, result)
        return result, None

    def _count(self, settled: Operation, result: SyncResult) -> None:
        if settled.status == OperationStatus.COMPLETED:
            result.operations_synced += 1
        elif settled.status == OperationStatus.RETRYING:
            result.operations_retried += 1
        elif settled.status == OperationStatus.FAILED:
            result.operations_failed += 1
            result.errors.append(
                f"{settled.entity_type}/{settled.entity_id} ({settled.id}): {settled.error}"
            )
        else:
            result.operations_requeued += 1

    def _settle_conflict(self, op: Operation, item, result: SyncResult) -> Operation:
        current = self.queue.get(op.id)
        if current is not None and current.cancel_requested:
            # The ack lands as a cancellation
            return self.queue.ack(op.id)

        remote = RemoteState(
            data=item.remote_state,
            version=item.remote_version,
            updated_at=item.remote_updated_at,
        )
        if self.resolver.already_applied(op, remote):
            return self.queue.ack(op.id)

        conflict = self.resolver.detect(op, remote)
        if conflict is None:
            return self.queue.nack(op.id, "Origin reported a conflict without a version change")

        result.conflicts.append(conflict)
        return self.apply_outcome(self.resolver.resolve(conflict))

    def apply_outcome(self, outcome: ResolutionOutcome) -> Operation:
        """Apply a resolver decision to the queue."""
        if outcome.action == ResolutionAction.DISCARD_LOCAL:
            return self.queue.ack(outcome.operation_id, superseded_by=outcome.superseded_by)
        if outcome.action == ResolutionAction.APPLY_LOCAL:
            return self.queue.requeue(
                outcome.operation_id, outcome.resolved_data, outcome.remote_version
            )
        return self.queue.hold(outcome.operation_id, outcome.conflict_id)

    # === History ===

    def _record_history(self, result: SyncResult) -> None:
        entry = SyncHistoryEntry.from_result(result)
        self._history.appendleft(entry)
        if self.store is None:
            return
        try:
            self.store.record_sync_history(entry, keep=HISTORY_LIMIT)
        except StorageError as e:
            logger.error(f"Could not persist sync history: {e}", exc_info=True)

    def get_sync_history(self, limit: int = HISTORY_LIMIT) -> List[SyncHistoryEntry]:
        return list(self._history)[:limit]

    def clear_sync_history(self) -> int:
        count = len(self._history)
        self._history.clear()
        if self.store is not None:
            self.store.clear_sync_history()
        return count

    # === Health ===

    def get_health_status(self, is_online: Optional[bool] = None) -> HealthReport:
        """Assess sync health from the queue and recent cycles."""
        issues: List[HealthIssue] = []
        recommendations: List[str] = []

        failed = self.queue.failed_count
        if failed:
            issues.append(HealthIssue("failed_operations", "high", f"{failed} operations failed"))
            recommendations.append("Review failed operations, then retry or clear them")

        pending = self.queue.pending_count
        if pending > LARGE_QUEUE_THRESHOLD:
            issues.append(
                HealthIssue("large_queue", "medium", f"{pending} operations waiting to sync")
            )
            recommendations.append("Sync more often or raise the batch size")

        now = self._clock()
        if self.last_sync_time is not None and now - self.last_sync_time > STALE_SYNC_AFTER:
            issues.append(
                HealthIssue("stale_sync", "medium", "Last successful sync was over 24 hours ago")
            )
            recommendations.append("Check connectivity to the origin")

        if self._consecutive_failures >= REPEATED_FAILURE_THRESHOLD:
            issues.append(
                HealthIssue(
                    "repeated_failures",
                    "medium",
                    f"{self._consecutive_failures} consecutive sync cycles failed",
                )
            )
            recommendations.append("Check origin availability and credentials")

        if is_online is False:
            issues.append(HealthIssue("offline", "low", "Device is offline"))
            recommendations.append("Changes will sync when connectivity returns")

        severities = {issue.severity for issue in issues}
        if "high" in severities:
            health = SyncHealth.CRITICAL
        elif "medium" in severities:
            health = SyncHealth.DEGRADED
        else:
            health = SyncHealth.HEALTHY

        return HealthReport(
            health=health,
            issues=issues,
            recommendations=recommendations,
            last_check_time=now,
        )
