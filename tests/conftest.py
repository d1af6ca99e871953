"""
Pytest fixtures and test configuration for offsync tests.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from offsync.config import OfflineManagerConfig
from offsync.conflict import ConflictResolver
from offsync.events import EventBus, EventKind
from offsync.manager import OfflineManager
from offsync.monitor import ConnectivityMonitor, StaticResourceMonitor
from offsync.queue import OperationQueue
from offsync.storage.sqlite import SQLiteOperationLogStore
from offsync.sync_engine import SyncEngine
from offsync.transport import (
    ConflictResult,
    OkResult,
    PermanentErrorResult,
    PushResponse,
    TransientErrorResult,
)
from offsync.types import Operation, OperationKind


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# Per-operation result builders for FakeRemote scripts


def ok(op: Operation):
    return OkResult(id=op.id, status="ok", new_version=2)


def transient(op: Operation):
    return TransientErrorResult(id=op.id, status="transientError", error="origin busy")


def permanent(op: Operation):
    return PermanentErrorResult(id=op.id, status="permanentError", reason="validation failed")


def conflict_with(
    data: Optional[Dict[str, Any]],
    version: Any = 2,
    updated_at: Optional[datetime] = None,
) -> Callable[[Operation], ConflictResult]:
    def build(op: Operation) -> ConflictResult:
        return ConflictResult(
            id=op.id,
            status="conflict",
            remote_state=data,
            remote_version=version,
            remote_updated_at=updated_at,
        )

    return build


Step = Union[Exception, Callable[[Operation], Any], Dict[str, Callable[[Operation], Any]]]


class FakeRemote:
    """Scripted remote origin.

    Each push consumes one script step: an exception to raise, a builder
    applied to every operation, or a dict of builders keyed by entity id.
    Operations without a scripted result get ``ok``.
    """

    def __init__(self):
        self.timeout = 30.0
        self.script: List[Step] = []
        self.pushed: List[List[Operation]] = []
        self.closed = False

    def respond(self, *steps: Step) -> "FakeRemote":
        self.script.extend(steps)
        return self

    def push(self, operations: Sequence[Operation]) -> PushResponse:
        self.pushed.append(list(operations))
        step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step
        results = {}
        for op in operations:
            if isinstance(step, dict):
                builder = step.get(op.entity_id, ok)
            else:
                builder = step or ok
            results[op.id] = builder(op)
        return PushResponse(
            results=results,
            bytes_sent=100 * len(operations),
            bytes_received=20 * len(operations),
        )

    def close(self) -> None:
        self.closed = True

    @property
    def pushed_ids(self) -> List[List[str]]:
        return [[op.id for op in batch] for batch in self.pushed]


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus):
        self.events = []
        self._lock = threading.Lock()
        bus.subscribe(None, self._record)

    def _record(self, event) -> None:
        with self._lock:
            self.events.append(event)

    def of(self, kind: EventKind) -> list:
        with self._lock:
            return [e for e in self.events if e.kind == kind]

    def kinds(self) -> List[EventKind]:
        with self._lock:
            return [e.kind for e in self.events]


def make_op(
    entity_id: str = "note-1",
    kind: OperationKind = OperationKind.UPDATE,
    entity_type: str = "note",
    payload: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> Operation:
    if payload is None and kind != OperationKind.DELETE:
        payload = {"title": f"title for {entity_id}"}
    return Operation(kind=kind, entity_type=entity_type, entity_id=entity_id, payload=payload, **kwargs)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path):
    s = SQLiteOperationLogStore(tmp_path / "offsync.db", max_storage_size=100 * 1024 * 1024)
    yield s
    s.close()


@pytest.fixture
def queue(store, clock):
    q = OperationQueue(store, base_delay_ms=1000, max_delay_ms=300_000, clock=clock)
    q.load()
    return q


@pytest.fixture
def resolver():
    return ConflictResolver()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def engine(queue, resolver, remote, store, clock):
    return SyncEngine(queue, resolver, remote, store, batch_size=50, clock=clock)


@pytest.fixture
def config(tmp_path):
    return OfflineManagerConfig(data_dir=tmp_path, enable_background_sync=False)


@pytest.fixture
def resources():
    return StaticResourceMonitor()


@pytest.fixture
def monitor(tmp_path, resources):
    m = ConnectivityMonitor(resources=resources, storage_path=tmp_path, online=True)
    yield m
    m.close()


@pytest.fixture
def build_manager(tmp_path, clock, resources):
    """Factory for managers wired to a FakeRemote over a tmp_path store."""
    created = []

    def build(
        remote: Optional[FakeRemote] = None,
        online: bool = True,
        start_background: bool = False,
        **overrides,
    ) -> OfflineManager:
        settings = {"data_dir": tmp_path, "enable_background_sync": False}
        settings.update(overrides)
        config = OfflineManagerConfig(**settings)
        store = SQLiteOperationLogStore(config.db_path, max_storage_size=config.max_storage_size)
        monitor = ConnectivityMonitor(resources=resources, storage_path=tmp_path, online=online)
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
        engine = SyncEngine(
            queue, resolver, remote if remote is not None else FakeRemote(), store,
            batch_size=config.sync_batch_size, clock=clock,
        )
        manager = OfflineManager(config, store, monitor, queue, resolver, engine, clock=clock)
        manager.initialize(start_background=start_background)
        created.append(manager)
        return manager

    yield build
    for manager in created:
        if manager._initialized:
            manager.destroy()


@pytest.fixture
def manager(build_manager, remote):
    return build_manager(remote)


@pytest.fixture
def bus():
    return EventBus()
