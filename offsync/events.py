"""Typed in-process event bus.

Each component owns an EventBus. The offline manager subscribes to every
component bus and republishes on its own, which is the only bus
collaborators see.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from offsync.types import utc_now

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    INITIALIZED = "initialized"
    ONLINE = "online"
    OFFLINE = "offline"
    SYNC_START = "syncStart"
    SYNC_COMPLETE = "syncComplete"
    SYNC_ERROR = "syncError"
    OPERATION_QUEUED = "operationQueued"
    OPERATION_COMPLETED = "operationCompleted"
    OPERATION_RETRYING = "operationRetrying"
    OPERATION_FAILED = "operationFailed"
    CONFLICT_DETECTED = "conflictDetected"
    CONFLICT_RESOLVED = "conflictResolved"
    CONFLICTS_CLEARED = "conflictsCleared"
    HEALTH_CHECK_COMPLETE = "healthCheckComplete"
    STORAGE_FULL = "storageFull"
    STORAGE_ERROR = "storageError"
    BATTERY_CHANGED = "batteryChanged"
    STORAGE_CHANGED = "storageChanged"
    CONFIGURATION_CHANGED = "configurationChanged"
    OFFLINE_MODE_ENABLED = "offlineModeEnabled"
    OFFLINE_MODE_DISABLED = "offlineModeDisabled"
    DESTROYED = "destroyed"


# Payload keys carried by each event kind. publish() rejects anything else.
EVENT_PAYLOAD_FIELDS: Dict[EventKind, FrozenSet[str]] = {
    EventKind.INITIALIZED: frozenset({"status"}),
    EventKind.ONLINE: frozenset(),
    EventKind.OFFLINE: frozenset(),
    EventKind.SYNC_START: frozenset({"batch_size"}),
    EventKind.SYNC_COMPLETE: frozenset({"duration", "bytes_synced", "result"}),
    EventKind.SYNC_ERROR: frozenset({"error", "duration"}),
    EventKind.OPERATION_QUEUED: frozenset({"operation"}),
    EventKind.OPERATION_COMPLETED: frozenset({"operation"}),
    EventKind.OPERATION_RETRYING: frozenset({"operation", "error", "delay_ms"}),
    EventKind.OPERATION_FAILED: frozenset({"operation", "error"}),
    EventKind.CONFLICT_DETECTED: frozenset({"conflict"}),
    EventKind.CONFLICT_RESOLVED: frozenset({"resolution"}),
    EventKind.CONFLICTS_CLEARED: frozenset({"count"}),
    EventKind.HEALTH_CHECK_COMPLETE: frozenset({"status", "stats"}),
    EventKind.STORAGE_FULL: frozenset({"used", "available"}),
    EventKind.STORAGE_ERROR: frozenset({"error"}),
    EventKind.BATTERY_CHANGED: frozenset({"level", "status"}),
    EventKind.STORAGE_CHANGED: frozenset({"used", "available"}),
    EventKind.CONFIGURATION_CHANGED: frozenset({"config"}),
    EventKind.OFFLINE_MODE_ENABLED: frozenset(),
    EventKind.OFFLINE_MODE_DISABLED: frozenset(),
    EventKind.DESTROYED: frozenset(),
}


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]


Handler = Callable[[Event], None]


class EventBus:
    """Subscription registry keyed by event kind.

    ``subscribe(None, handler)`` receives every kind. Handlers run on the
    publishing thread; a failing handler is logged and does not stop the
    others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[Optional[EventKind], List[Tuple[int, Handler]]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, kind: Optional[EventKind], handler: Handler) -> int:
        """Register a handler and return the token that unsubscribes it."""
        if kind is not None:
            kind = EventKind(kind)
        token = next(self._tokens)
        with self._lock:
            self._subscribers.setdefault(kind, []).append((token, handler))
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            for kind, handlers in self._subscribers.items():
                for i, (existing, _) in enumerate(handlers):
                    if existing == token:
                        del handlers[i]
                        return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def subscriber_count(self, kind: Optional[EventKind] = None) -> int:
        with self._lock:
            return len(self._subscribers.get(kind, []))

    def publish(self, kind: EventKind, **payload: Any) -> Event:
        kind = EventKind(kind)
        expected = EVENT_PAYLOAD_FIELDS[kind]
        if set(payload) != expected:
            raise ValueError(
                f"Event {kind.value} expects payload keys {sorted(expected)}, "
                f"got {sorted(payload)}"
            )
        return self.publish_event(Event(kind=kind, payload=payload))

    def publish_event(self, event: Event) -> Event:
        """Deliver an already-built event (used when relaying between buses)."""
        with self._lock:
            handlers = list(self._subscribers.get(event.kind, []))
            handlers.extend(self._subscribers.get(None, []))
        for _, handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.kind.value}: {e}", exc_info=True)
        return event
