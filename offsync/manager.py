"""Offline manager.

The public face of the engine. Wires the operation log, monitor, queue,
resolver and sync engine together, owns OfflineStatus and OfflineStats, runs
the background sync and health-check loops, and republishes component events
to collaborators.
"""

import dataclasses
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx

from offsync.config import CONFIG_SETTINGS_KEY, OfflineManagerConfig, get_settings
from offsync.conflict import ConflictResolver
from offsync.errors import (
    ConfigurationError,
    OffsyncError,
    OfflineError,
    StorageError,
    StorageFullError,
)
from offsync.events import Event, EventBus, EventKind, Handler
from offsync.logging_config import log_operation, log_sync_cycle
from offsync.monitor import ConnectivityMonitor, ResourceMonitor
from offsync.queue import OperationQueue
from offsync.storage.base import OperationLogStore
from offsync.storage.sqlite import SQLiteOperationLogStore
from offsync.sync_engine import SyncEngine
from offsync.transport import HttpRemoteOrigin, RemoteOrigin
from offsync.types import (
    BatteryStatus,
    Conflict,
    ConnectionQuality,
    HealthReport,
    OfflineStats,
    OfflineStatus,
    Operation,
    OperationKind,
    Priority,
    ResolutionOutcome,
    StorageStatus,
    SyncHistoryEntry,
    SyncResult,
    utc_now,
)

logger = logging.getLogger(__name__)

# Storage pressure thresholds, as fractions of max_storage_size still available
CRITICAL_STORAGE_FRACTION = 0.1
LOW_STORAGE_FRACTION = 0.3

# Error recorded on held operations whose conflict was cleared unresolved
CONFLICT_CLEARED_ERROR = "conflict cleared"


class BackgroundLoop:
    """Calls ``target`` every ``interval_s`` on a daemon thread until stopped.

    ``trigger()`` wakes the loop for an immediate run.
    """

    def __init__(self, name: str, interval_s: float, target: Callable[[], Any]):
        self.name = name
        self.interval_s = interval_s
        self._target = target
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        logger.debug(f"{self.name} started (interval={self.interval_s}s)")

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        self._wake.set()
        if thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None
        logger.debug(f"{self.name} stopped")

    def trigger(self) -> None:
        if self.is_running:
            self._wake.set()

    def set_interval(self, interval_s: float) -> None:
        if interval_s == self.interval_s:
            return
        self.interval_s = interval_s
        if self.is_running:
            self.stop()
            self.start()

    def _run(self) -> None:
        stop = self._stop
        while not stop.is_set():
            self._wake.wait(self.interval_s)
            self._wake.clear()
            if stop.is_set():
                break
            self.runs += 1
            try:
                self._target()
            except Exception as e:
                logger.error(f"{self.name} iteration failed: {e}", exc_info=True)


class OfflineManager:
    """Orchestrates offline operation for one client.

    Every collaborator is injected; use ``OfflineManager.create()`` for the
    default SQLite + HTTP wiring.

    Args:
        config: Engine settings.
        store: Operation log.
        monitor: Connectivity and resource event source.
        queue: Operation queue writing through to ``store``.
        resolver: Conflict resolver.
        sync_engine: Sync engine over ``queue`` and ``resolver``.
    """

    def __init__(
        self,
        config: OfflineManagerConfig,
        store: OperationLogStore,
        monitor: ConnectivityMonitor,
        queue: OperationQueue,
        resolver: ConflictResolver,
        sync_engine: SyncEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
        namespace: Optional[str] = None,
    ):
        self.config = config
        self.store = store
        self.monitor = monitor
        self.queue = queue
        self.resolver = resolver
        self.sync_engine = sync_engine
        self.namespace = namespace  # When set, sync events are also written to the event log
        self.events = EventBus()
        self._clock = clock
        self._state_lock = threading.RLock()
        self._status = OfflineStatus(
            is_online=monitor.is_online,
            connection_quality=monitor.quality,
            offline_mode_enabled=config.enable_offline_mode,
        )
        self._stats = OfflineStats()
        self._overrides: Dict[str, Any] = {}
        self._subscriptions: List[tuple] = []
        self._initialized = False
        self._background = True
        self._owned_remote: Optional[RemoteOrigin] = None
        self._sync_loop = BackgroundLoop(
            "offsync-sync", config.sync_interval_ms / 1000.0, self.run_background_sync
        )
        self._health_loop = BackgroundLoop(
            "offsync-health", config.health_check_interval_ms / 1000.0, self.health_check
        )
        if monitor.storage_info_fn is None:
            monitor.storage_info_fn = store.get_storage_info

    @classmethod
    def create(
        cls,
        config: Optional[OfflineManagerConfig] = None,
        remote: Optional[RemoteOrigin] = None,
        *,
        resources: Optional[ResourceMonitor] = None,
        clock: Callable[[], datetime] = utc_now,
        namespace: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> "OfflineManager":
        """Build a manager over a SQLite store in ``config.data_dir``.

        Without an explicit ``remote``, an HTTP origin is created from
        ``config.remote_url`` when one is configured. ``client`` is shared by
        that origin and the connectivity probe; the caller keeps ownership.
        """
        config = config or get_settings()
        store = SQLiteOperationLogStore(config.db_path, max_storage_size=config.max_storage_size)
        owned_remote = None
        if remote is None and config.remote_url:
            remote = owned_remote = HttpRemoteOrigin(
                config.remote_url, auth_token=config.auth_token, client=client
            )
        monitor = ConnectivityMonitor(
            config.effective_probe_url,
            timeout_ms=config.offline_timeout_ms,
            resources=resources,
            storage_path=config.data_dir,
            storage_info_fn=store.get_storage_info,
            client=client,
        )
        queue = OperationQueue(
            store,
            base_delay_ms=config.retry_delay_ms,
            max_delay_ms=config.max_retry_delay_ms,
            clock=clock,
        )
        resolver = ConflictResolver(
            config.conflict_strategies,
            config.default_conflict_strategy,
            config.enable_conflict_resolution,
            store=store,
        )
        engine = SyncEngine(queue, resolver, remote, store, batch_size=config.sync_batch_size, clock=clock)
        manager = cls(config, store, monitor, queue, resolver, engine, clock=clock, namespace=namespace)
        manager._owned_remote = owned_remote
        return manager

    # === Lifecycle ===

    def initialize(self, start_background: bool = True) -> None:
        """Restore persisted config and operations, then start background work.

        One-shot callers such as the CLI pass ``start_background=False`` so no
        loop threads are started.
        """
        if self._initialized:
            return

        overrides = self.store.load_setting(CONFIG_SETTINGS_KEY, {})
        if overrides:
            try:
                self.config = self.config.merged(overrides)
                self._overrides = dict(overrides)
            except ConfigurationError as e:
                logger.warning(f"Ignoring invalid persisted configuration: {e}")

        self._apply_config()
        loaded = self.queue.load()
        self.resolver.load()
        self._release_orphaned_holds()
        for bus in (self.monitor.events, self.queue.events, self.resolver.events, self.sync_engine.events):
            self._subscriptions.append((bus, bus.subscribe(None, self._on_component_event)))

        if self.monitor.probe_url:
            # Learn connectivity now rather than at the first poll
            self.check_status()

        with self._state_lock:
            self._status.is_online = self.monitor.is_online
            self._status.last_sync_time = self.sync_engine.last_sync_time
        self._poll_resources()
        self._refresh_queue_state()
        self._initialized = True
        self._background = start_background
        self._update_loops()

        logger.info(f"Offline manager initialized with {loaded} stored operations")
        self.events.publish(EventKind.INITIALIZED, status=self._status_copy())

    def destroy(self) -> None:
        """Stop background work and release every collaborator."""
        self._sync_loop.stop()
        self._health_loop.stop()
        self.monitor.stop()
        for bus, token in self._subscriptions:
            bus.unsubscribe(token)
        self._subscriptions.clear()
        self.monitor.close()
        if self._owned_remote is not None:
            self._owned_remote.close()
        self.store.close()
        self._initialized = False
        self.events.publish(EventKind.DESTROYED)
        self.events.clear()

    def _release_orphaned_holds(self) -> None:
        """Free held operations whose conflict did not survive a restart."""
        for op in self.queue.list_pending():
            if not op.awaiting_resolution:
                continue
            conflict = self.resolver.get_conflict_for_operation(op.id)
            if conflict is None or conflict.id != op.awaiting_resolution:
                self.queue.release_hold(op.id)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise OffsyncError("OfflineManager is not initialized; call initialize() first")

    # === Events ===

    def subscribe(self, kind: Optional[EventKind], handler: Handler) -> int:
        """Subscribe to one event kind (or every kind with None). Returns a token."""
        return self.events.subscribe(kind, handler)

    def unsubscribe(self, token: int) -> bool:
        return self.events.unsubscribe(token)

    def _on_component_event(self, event: Event) -> None:
        handler = self._EVENT_HANDLERS.get(event.kind)
        if handler is not None:
            handler(self, event)
        self.events.publish_event(event)

    def _handle_online(self, event: Event) -> None:
        with self._state_lock:
            self._status.is_online = True
            self._status.connection_quality = self.monitor.quality
        # Reconnecting starts a cycle right away instead of waiting a full interval
        self._sync_loop.trigger()

    def _handle_offline(self, event: Event) -> None:
        with self._state_lock:
            self._status.is_online = False
            self._status.connection_quality = ConnectionQuality.OFFLINE

    def _handle_battery(self, event: Event) -> None:
        with self._state_lock:
            self._stats.battery_level = event["level"]
            self._status.battery_status = event["status"]
        if event["status"] == BatteryStatus.CRITICAL:
            logger.warning("Battery critical: background sync suspended")
        self._update_loops()

    def _handle_storage(self, event: Event) -> None:
        status = self._classify_storage(event["available"])
        with self._state_lock:
            self._stats.storage_used = event["used"]
            self._stats.storage_available = event["available"]
            previous = self._status.storage_status
            self._status.storage_status = status
        if status != previous:
            logger.info(f"Storage status changed: {previous.value} -> {status.value}")

    def _handle_sync_start(self, event: Event) -> None:
        with self._state_lock:
            self._status.is_syncing = True

    def _handle_sync_complete(self, event: Event) -> None:
        result: SyncResult = event["result"]
        now = self._clock()
        with self._state_lock:
            self._status.is_syncing = False
            self._status.last_sync_time = now
            if self._sync_loop.is_running:
                self._status.next_sync_time = now + timedelta(milliseconds=self.config.sync_interval_ms)
            self._record_cycle(event["duration"], event["bytes_synced"])
        self._refresh_sync_health()
        if self.namespace:
            log_sync_cycle(
                self.namespace,
                result.operations_synced,
                result.operations_failed,
                result.conflict_count,
                event["duration"],
                data_dir=self.config.data_dir,
            )

    def _handle_sync_error(self, event: Event) -> None:
        with self._state_lock:
            self._status.is_syncing = False
            self._record_cycle(event["duration"], 0)
        self._refresh_sync_health()
        if self.namespace:
            log_sync_cycle(
                self.namespace, 0, 0, 0, event["duration"], error=event["error"],
                data_dir=self.config.data_dir,
            )

    def _record_cycle(self, duration: float, bytes_synced: int) -> None:
        stats = self._stats
        stats.sync_cycles += 1
        stats.data_synced += bytes_synced
        stats.last_sync_duration = duration
        stats.average_sync_time += (duration - stats.average_sync_time) / stats.sync_cycles

    def _handle_operation_queued(self, event: Event) -> None:
        with self._state_lock:
            self._stats.total_operations += 1
        self._refresh_queue_state()
        if self.namespace:
            op: Operation = event["operation"]
            log_operation(
                self.namespace, "queued", op.id, op.entity_type, op.entity_id,
                data_dir=self.config.data_dir,
            )

    def _handle_operation_completed(self, event: Event) -> None:
        with self._state_lock:
            self._stats.successful_operations += 1
        self._refresh_queue_state()

    def _handle_operation_failed(self, event: Event) -> None:
        with self._state_lock:
            self._stats.failed_operations += 1
        self._refresh_queue_state()

    def _handle_operation_retrying(self, event: Event) -> None:
        self._refresh_queue_state()

    def _handle_conflict_detected(self, event: Event) -> None:
        with self._state_lock:
            self._status.has_conflicts = True

    def _handle_conflict_resolved(self, event: Event) -> None:
        with self._state_lock:
            self._stats.conflicts_resolved += 1
            self._status.has_conflicts = self.resolver.has_open_conflicts

    _EVENT_HANDLERS: Dict[EventKind, Callable[["OfflineManager", Event], None]] = {
        EventKind.ONLINE: _handle_online,
        EventKind.OFFLINE: _handle_offline,
        EventKind.BATTERY_CHANGED: _handle_battery,
        EventKind.STORAGE_CHANGED: _handle_storage,
        EventKind.SYNC_START: _handle_sync_start,
        EventKind.SYNC_COMPLETE: _handle_sync_complete,
        EventKind.SYNC_ERROR: _handle_sync_error,
        EventKind.OPERATION_QUEUED: _handle_operation_queued,
        EventKind.OPERATION_COMPLETED: _handle_operation_completed,
        EventKind.OPERATION_FAILED: _handle_operation_failed,
        EventKind.OPERATION_RETRYING: _handle_operation_retrying,
        EventKind.CONFLICT_DETECTED: _handle_conflict_detected,
        EventKind.CONFLICT_RESOLVED: _handle_conflict_resolved,
    }

    # === State helpers ===

    def _status_copy(self) -> OfflineStatus:
        with self._state_lock:
            return dataclasses.replace(self._status)

    def _refresh_queue_state(self) -> None:
        pending = self.queue.pending_count
        with self._state_lock:
            self._stats.pending_operations = pending
            self._status.has_pending_changes = pending > 0
            self._status.has_conflicts = self.resolver.has_open_conflicts

    def _refresh_sync_health(self) -> HealthReport:
        report = self.sync_engine.get_health_status(is_online=self._status.is_online)
        with self._state_lock:
            self._status.sync_health = report.health
        return report

    def _poll_resources(self) -> None:
        try:
            self.monitor.poll_resources()
        except (OSError, StorageError) as e:
            logger.warning(f"Resource poll failed: {e}")

    def _classify_storage(self, available: int) -> StorageStatus:
        limit = self.config.max_storage_size
        if available < limit * CRITICAL_STORAGE_FRACTION:
            return StorageStatus.CRITICAL
        if available < limit * LOW_STORAGE_FRACTION:
            return StorageStatus.LOW
        return StorageStatus.NORMAL

    def _publish_storage_error(self, error: StorageError) -> None:
        if isinstance(error, StorageFullError):
            with self._state_lock:
                self._status.storage_status = StorageStatus.CRITICAL
                used, available = self._stats.storage_used, self._stats.storage_available
            self.events.publish(EventKind.STORAGE_FULL, used=used, available=available)
        else:
            self.events.publish(EventKind.STORAGE_ERROR, error=str(error))

    # === Background loops ===

    def _update_loops(self) -> None:
        """Start or stop the loops to match configuration and battery state."""
        if not self._initialized or not self._background:
            return
        config = self.config
        with self._state_lock:
            battery_critical = self._status.battery_status == BatteryStatus.CRITICAL

        self._sync_loop.set_interval(config.sync_interval_ms / 1000.0)
        self._health_loop.set_interval(config.health_check_interval_ms / 1000.0)

        if config.enable_offline_mode and config.enable_background_sync and not battery_critical:
            if not self._sync_loop.is_running:
                self._sync_loop.start()
                with self._state_lock:
                    self._status.next_sync_time = self._clock() + timedelta(
                        milliseconds=config.sync_interval_ms
                    )
        else:
            self._sync_loop.stop()
            with self._state_lock:
                self._status.next_sync_time = None

        if config.enable_offline_mode and config.enable_health_checks:
            self._health_loop.start()
        else:
            self._health_loop.stop()

        if config.enable_offline_mode:
            self.monitor.start(config.sync_interval_ms / 1000.0)
        else:
            self.monitor.stop()

    @property
    def background_sync_active(self) -> bool:
        return self._sync_loop.is_running

    @property
    def health_checks_active(self) -> bool:
        return self._health_loop.is_running

    @property
    def monitoring_active(self) -> bool:
        return self.monitor.is_running

    def _background_block_reason(self) -> Optional[str]:
        if not self.config.enable_offline_mode:
            return "offline mode disabled"
        if not self.config.enable_background_sync:
            return "background sync disabled"
        with self._state_lock:
            if not self._status.is_online:
                return "offline"
            if self._status.battery_status == BatteryStatus.CRITICAL:
                return "battery critical"
        return None

    def run_background_sync(self) -> Optional[SyncResult]:
        """One background cycle, if the scheduling gates allow it."""
        reason = self._background_block_reason()
        if reason:
            logger.debug(f"Background sync skipped: {reason}")
            return None
        entity_types = None
        if self.config.enable_selective_sync and self.config.priority_sync:
            entity_types = list(self.config.priority_sync)
        try:
            return self.sync_engine.sync_all(entity_types)
        except StorageError as e:
            self._publish_storage_error(e)
            raise

    # === Public API ===

    def enqueue(
        self,
        kind: Union[OperationKind, str],
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: Union[Priority, str] = Priority.MEDIUM,
        dependencies: Iterable[str] = (),
        max_retries: Optional[int] = None,
        base_version: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Operation:
        """Queue a mutation for synchronization.

        Entity types listed in ``priority_sync`` are raised to at least high
        priority.

        Raises:
            StorageFullError: storage is critical, or the store ran out of space.
            StorageError: the store could not record the operation.
            ValueError: the operation is malformed.
        """
        self._require_initialized()
        with self._state_lock:
            storage_critical = self._status.storage_status == StorageStatus.CRITICAL
        if storage_critical:
            error = StorageFullError("Storage is critical; new operations are rejected")
            self._publish_storage_error(error)
            raise error

        priority = Priority(priority)
        if entity_type in self.config.priority_sync and priority.rank < Priority.HIGH.rank:
            priority = Priority.HIGH

        op = Operation(
            kind=OperationKind(kind),
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
            priority=priority,
            dependencies=list(dependencies),
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            base_version=base_version,
            metadata=dict(metadata or {}),
        )
        try:
            return self.queue.enqueue(op)
        except StorageError as e:
            self._publish_storage_error(e)
            raise

    def manual_sync(self) -> SyncResult:
        """Sync everything eligible now.

        Raises:
            OfflineError: immediately, when there is no connectivity.
        """
        self._require_initialized()
        self._require_online()
        try:
            result = self.sync_engine.sync_all()
        except StorageError as e:
            self._publish_storage_error(e)
            raise
        if result.skipped:
            logger.info("Manual sync skipped: a sync cycle is already running")
        return result

    def sync_entity(self, entity_type: str, entity_id: str) -> SyncResult:
        """Sync only the operations of one entity."""
        self._require_initialized()
        self._require_online()
        return self.sync_engine.sync_entity(entity_type, entity_id)

    def _require_online(self) -> None:
        with self._state_lock:
            online = self._status.is_online
        if not online:
            raise OfflineError("Cannot sync while offline")

    def retry_operation(self, op_id: str) -> Operation:
        op = self.queue.retry(op_id)
        self._refresh_queue_state()
        return op

    def cancel_operation(self, op_id: str) -> Operation:
        op = self.queue.cancel(op_id)
        if op.is_terminal and self.resolver.discard(op_id) is not None:
            logger.info(f"Dropped open conflict for cancelled operation {op_id}")
        self._refresh_queue_state()
        return op

    def resolve_conflict(
        self, op_id: str, resolution: Union[str, Dict[str, Any]]
    ) -> ResolutionOutcome:
        """Resolve the conflict holding ``op_id``.

        Args:
            op_id: The operation held by a manual conflict.
            resolution: A strategy name (e.g. "last_write_wins") or the
                resolved entity data to send.
        """
        outcome = self.resolver.resolve_manual(op_id, resolution)
        op = self.queue.get(op_id)
        if op is not None and op.awaiting_resolution == outcome.conflict_id:
            self.sync_engine.apply_outcome(outcome)
        self._refresh_queue_state()
        return outcome

    def clear_conflicts(self) -> int:
        """Drop open conflicts. Their held operations fail and stay retryable."""
        dropped = self.resolver.clear()
        for conflict in dropped:
            op = self.queue.get(conflict.operation_id)
            if op is not None and op.awaiting_resolution == conflict.id:
                self.queue.fail(op.id, CONFLICT_CLEARED_ERROR)
        self._refresh_queue_state()
        self.events.publish(EventKind.CONFLICTS_CLEARED, count=len(dropped))
        return len(dropped)

    def clear_failed_operations(self, op_ids: Optional[Iterable[str]] = None) -> int:
        count = self.queue.clear_failed(op_ids)
        self._refresh_queue_state()
        return count

    def check_status(self) -> OfflineStatus:
        """Probe connection quality (when a probe URL is set) and return a status copy."""
        if self.monitor.probe_url:
            quality = self.monitor.probe_connection_quality()
            with self._state_lock:
                self._status.connection_quality = quality
                self._stats.network_latency = self.monitor.last_latency_ms
            self.sync_engine.adapt_to_connection(quality)
        return self._status_copy()

    def get_stats(self) -> OfflineStats:
        self._refresh_queue_state()
        with self._state_lock:
            return dataclasses.replace(self._stats)

    def get_pending_operations(self) -> List[Operation]:
        return self.queue.list_pending()

    def get_failed_operations(self) -> List[Operation]:
        return self.queue.list_failed()

    def get_conflicts(self) -> List[Conflict]:
        return self.resolver.open_conflicts()

    def get_config(self) -> OfflineManagerConfig:
        return self.config.model_copy()

    def get_sync_history(self, limit: int = 100) -> List[SyncHistoryEntry]:
        return self.sync_engine.get_sync_history(limit)

    def get_health_status(self) -> HealthReport:
        return self._refresh_sync_health()

    def health_check(self) -> HealthReport:
        """Reassess storage, battery and connection, then sync health."""
        self._poll_resources()
        self.check_status()
        self.queue.release_due()
        self.queue.prune_failed(timedelta(days=self.config.failed_retention_days))
        self._refresh_queue_state()
        report = self._refresh_sync_health()
        self.events.publish(
            EventKind.HEALTH_CHECK_COMPLETE, status=self._status_copy(), stats=self.get_stats()
        )
        return report

    # === Configuration ===

    def configure(self, partial: Optional[Mapping[str, Any]] = None, **options: Any) -> OfflineManagerConfig:
        """Apply and persist configuration overrides.

        Raises:
            ConfigurationError: an option is unknown or invalid. The previous
                configuration stays in effect.
        """
        changes = dict(partial or {})
        changes.update(options)
        new_config = self.config.merged(changes)

        overrides = {**self._overrides, **changes}
        self.store.save_setting(CONFIG_SETTINGS_KEY, overrides)
        self._overrides = overrides
        self.config = new_config
        self._apply_config()
        self._update_loops()

        logger.info(f"Configuration updated: {', '.join(sorted(changes))}")
        self.events.publish(EventKind.CONFIGURATION_CHANGED, config=new_config.public_dict())
        return self.get_config()

    def _apply_config(self) -> None:
        config = self.config
        self.queue.configure_backoff(config.retry_delay_ms, config.max_retry_delay_ms)
        self.resolver.configure(
            config.conflict_strategies,
            config.default_conflict_strategy,
            config.enable_conflict_resolution,
        )
        self.sync_engine.set_batch_size(config.sync_batch_size)
        self.monitor.timeout_ms = config.offline_timeout_ms
        if hasattr(self.store, "max_storage_size"):
            self.store.max_storage_size = config.max_storage_size
        with self._state_lock:
            self._status.offline_mode_enabled = config.enable_offline_mode

    def enable_offline_mode(self) -> None:
        self.configure(enable_offline_mode=True)
        self.events.publish(EventKind.OFFLINE_MODE_ENABLED)

    def disable_offline_mode(self) -> None:
        """Pause both background loops until offline mode is enabled again."""
        self.configure(enable_offline_mode=False)
        self.events.publish(EventKind.OFFLINE_MODE_DISABLED)
