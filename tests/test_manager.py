"""Tests for OfflineManager: lifecycle, scheduling gates, stats and configuration."""

import json
import threading
from datetime import datetime, timezone

import httpx
import pytest

from conftest import EventRecorder, FakeRemote, conflict_with, permanent, transient
from offsync.config import OfflineManagerConfig
from offsync.conflict import OPEN_CONFLICTS_KEY
from offsync.errors import (
    ConfigurationError,
    OfflineError,
    OffsyncError,
    StorageFullError,
    TransientRemoteError,
)
from offsync.events import EventKind
from offsync.manager import CONFLICT_CLEARED_ERROR, BackgroundLoop, OfflineManager
from offsync.monitor import StaticResourceMonitor
from offsync.transport import HttpRemoteOrigin
from offsync.types import (
    BatteryStatus,
    ConnectionQuality,
    OperationKind,
    OperationStatus,
    Priority,
    StorageStatus,
    SyncHealth,
)


class TestLifecycle:
    def test_initialize_reports_status(self, manager):
        status = manager.check_status()
        assert status.is_online
        assert not status.has_pending_changes
        assert status.storage_status == StorageStatus.NORMAL
        assert status.offline_mode_enabled

    def test_operations_survive_restart(self, build_manager):
        first = build_manager(online=False)
        op = first.enqueue(OperationKind.CREATE, "note", "n1", {"title": "a"})
        first.destroy()

        second = build_manager(online=False)
        assert [p.id for p in second.get_pending_operations()] == [op.id]
        assert second.check_status().has_pending_changes

    def test_destroy_emits_and_releases(self, manager):
        recorder = EventRecorder(manager.events)
        manager.destroy()
        assert recorder.kinds() == [EventKind.DESTROYED]
        assert manager.events.subscriber_count() == 0

    def test_requires_initialize(self, manager):
        manager.destroy()
        with pytest.raises(OffsyncError):
            manager.enqueue(OperationKind.CREATE, "note", "n1", {})

    def test_create_wires_http_origin(self, tmp_path):
        config = OfflineManagerConfig(
            data_dir=tmp_path,
            remote_url="http://origin.test",
            enable_background_sync=False,
            enable_health_checks=False,
        )
        manager = OfflineManager.create(config, resources=StaticResourceMonitor())
        remote = manager.sync_engine.remote
        assert isinstance(remote, HttpRemoteOrigin)
        assert manager.monitor.probe_url == "http://origin.test"

        # Connectivity at startup is covered with a mock transport below
        manager.monitor.probe_url = None
        manager.initialize(start_background=False)
        assert not manager.background_sync_active
        assert not manager.monitoring_active
        manager.destroy()
        assert remote._client.is_closed

    def test_create_learns_connectivity_at_startup(self, tmp_path):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.method)
            if request.method == "HEAD":
                return httpx.Response(200)
            ids = [op["id"] for op in json.loads(request.content)["operations"]]
            return httpx.Response(200, json={"results": [{"id": i, "status": "ok"} for i in ids]})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        config = OfflineManagerConfig(
            data_dir=tmp_path, remote_url="http://origin.test", enable_background_sync=False
        )
        manager = OfflineManager.create(config, resources=StaticResourceMonitor(), client=client)
        manager.initialize(start_background=False)

        status = manager.check_status()
        assert status.is_online
        assert status.connection_quality != ConnectionQuality.OFFLINE
        assert seen[0] == "HEAD"

        manager.enqueue(OperationKind.CREATE, "note", "n1", {"title": "a"})
        assert manager.manual_sync().operations_synced == 1
        manager.destroy()
        assert not client.is_closed
        client.close()

    def test_unreachable_origin_starts_offline(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        config = OfflineManagerConfig(
            data_dir=tmp_path, remote_url="http://origin.test", enable_background_sync=False
        )
        manager = OfflineManager.create(config, resources=StaticResourceMonitor(), client=client)
        manager.initialize(start_background=False)
        assert not manager.check_status().is_online
        with pytest.raises(OfflineError):
            manager.manual_sync()
        manager.destroy()
        client.close()

    def test_background_start_runs_connectivity_monitor(self, build_manager):
        manager = build_manager(start_background=True)
        assert manager.monitoring_active

        manager.disable_offline_mode()
        assert not manager.monitoring_active
        manager.enable_offline_mode()
        assert manager.monitoring_active

        manager.destroy()
        assert not manager.monitoring_active


class TestOfflineToOnline:
    def test_queued_offline_operation_syncs_after_reconnect(self, build_manager, remote):
        """Reconnecting wakes the background loop, which drains the queue."""
        manager = build_manager(
            remote, online=False, start_background=True,
            enable_background_sync=True, sync_interval_ms=60_000,
        )
        completed = threading.Event()
        manager.subscribe(EventKind.OPERATION_COMPLETED, lambda event: completed.set())

        op = manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "offline edit"})
        assert manager.check_status().has_pending_changes
        assert manager.background_sync_active

        manager.monitor.set_online(True)

        assert completed.wait(5)
        assert remote.pushed_ids == [[op.id]]
        assert manager.get_pending_operations() == []
        assert manager.get_stats().successful_operations == 1

    def test_offline_manual_sync_raises(self, build_manager):
        manager = build_manager(online=False)
        with pytest.raises(OfflineError):
            manager.manual_sync()
        with pytest.raises(OfflineError):
            manager.sync_entity("note", "n1")

    def test_connectivity_transitions_update_status(self, manager):
        recorder = EventRecorder(manager.events)
        manager.monitor.set_online(False)
        status = manager.check_status()
        assert not status.is_online
        assert status.connection_quality == ConnectionQuality.OFFLINE

        manager.monitor.set_online(True)
        assert manager.check_status().is_online
        assert recorder.kinds() == [EventKind.OFFLINE, EventKind.ONLINE]


class TestRetries:
    def test_transient_errors_exhaust_retries(self, manager, remote, clock):
        remote.respond(transient, transient, transient, transient)
        recorder = EventRecorder(manager.events)
        op = manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "x"})

        for _ in range(4):
            manager.manual_sync()
            clock.advance(minutes=10)

        assert len(recorder.of(EventKind.OPERATION_RETRYING)) == 3
        failed = manager.get_failed_operations()
        assert [f.id for f in failed] == [op.id]
        assert failed[0].retry_count == 3
        assert manager.get_stats().failed_operations == 1
        assert manager.get_health_status().health == SyncHealth.CRITICAL

    def test_retry_and_clear_failed(self, manager, remote):
        remote.respond(permanent)
        op = manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "x"})
        manager.manual_sync()
        assert manager.get_failed_operations()

        again = manager.retry_operation(op.id)
        assert again.status == OperationStatus.PENDING
        assert again.retry_count == 0
        manager.manual_sync()
        assert manager.get_pending_operations() == []

        remote.respond(permanent)
        manager.enqueue(OperationKind.UPDATE, "note", "n2", {"title": "y"})
        manager.manual_sync()
        assert manager.clear_failed_operations() == 1
        assert manager.get_failed_operations() == []


class TestConflicts:
    @pytest.fixture
    def held(self, build_manager, remote):
        manager = build_manager(remote, default_conflict_strategy="manual")
        remote.respond(
            conflict_with(
                {"title": "remote"},
                version=2,
                updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
            )
        )
        op = manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "local"}, base_version=1)
        manager.manual_sync()
        return manager, op

    def test_manual_conflict_holds_operation(self, held):
        manager, op = held
        assert manager.check_status().has_conflicts
        assert [c.operation_id for c in manager.get_conflicts()] == [op.id]
        pending = manager.get_pending_operations()
        assert pending[0].awaiting_resolution

    def test_resolution_is_idempotent(self, held, remote):
        manager, op = held
        first = manager.resolve_conflict(op.id, "last_write_wins")
        assert first.policy_decision == "local_wins"
        assert not manager.check_status().has_conflicts
        assert manager.get_stats().conflicts_resolved == 1

        second = manager.resolve_conflict(op.id, "last_write_wins")
        assert second is first
        assert manager.get_stats().conflicts_resolved == 1

        manager.manual_sync()
        assert manager.get_pending_operations() == []
        assert remote.pushed[-1][0].base_version == 2

    def test_resolve_with_data(self, held, remote):
        manager, op = held
        manager.resolve_conflict(op.id, {"title": "both"})
        manager.manual_sync()
        assert remote.pushed[-1][0].payload == {"title": "both"}

    def test_clear_conflicts_fails_held_operations(self, held):
        manager, op = held
        recorder = EventRecorder(manager.events)
        assert manager.clear_conflicts() == 1
        assert recorder.of(EventKind.CONFLICTS_CLEARED)[0]["count"] == 1
        failed = manager.get_failed_operations()
        assert failed[0].error == CONFLICT_CLEARED_ERROR
        assert not manager.check_status().has_conflicts

        manager.retry_operation(op.id)
        manager.manual_sync()
        assert manager.get_pending_operations() == []

    def test_cancel_held_operation_drops_conflict(self, held):
        manager, op = held
        cancelled = manager.cancel_operation(op.id)
        assert cancelled.status == OperationStatus.FAILED
        assert manager.get_conflicts() == []

    def test_open_conflict_survives_restart(self, held, build_manager, remote):
        first, op = held
        conflict_id = first.get_conflicts()[0].id
        first.destroy()

        second = build_manager(remote, default_conflict_strategy="manual")
        assert second.check_status().has_conflicts
        restored = second.get_conflicts()
        assert [c.id for c in restored] == [conflict_id]
        assert restored[0].remote_version == 2
        assert second.get_pending_operations()[0].awaiting_resolution == conflict_id

        second.resolve_conflict(op.id, "last_write_wins")
        assert not second.check_status().has_conflicts
        assert second.manual_sync().operations_synced == 1
        assert second.get_pending_operations() == []
        assert remote.pushed[-1][0].base_version == 2

    def test_orphaned_hold_is_released_on_restart(self, held, build_manager, remote):
        first, op = held
        first.store.save_setting(OPEN_CONFLICTS_KEY, [])
        first.destroy()

        second = build_manager(remote, default_conflict_strategy="manual")
        assert not second.check_status().has_conflicts
        pending = second.get_pending_operations()
        assert [p.id for p in pending] == [op.id]
        assert pending[0].awaiting_resolution is None

        assert second.manual_sync().operations_synced == 1
        assert second.get_pending_operations() == []


class TestStorage:
    def test_critical_storage_rejects_enqueue(self, manager):
        recorder = EventRecorder(manager.events)
        manager.monitor.update_storage(used=manager.config.max_storage_size, available=1024)
        assert manager.check_status().storage_status == StorageStatus.CRITICAL

        with pytest.raises(StorageFullError):
            manager.enqueue(OperationKind.CREATE, "note", "n1", {"title": "x"})

        assert manager.get_pending_operations() == []
        assert manager.store.load_pending() == []
        assert recorder.of(EventKind.STORAGE_FULL)[0]["available"] == 1024

    def test_low_storage_still_accepts(self, manager):
        limit = manager.config.max_storage_size
        manager.monitor.update_storage(used=0, available=int(limit * 0.2))
        assert manager.check_status().storage_status == StorageStatus.LOW
        manager.enqueue(OperationKind.CREATE, "note", "n1", {"title": "x"})
        assert manager.get_stats().storage_available == int(limit * 0.2)


class TestBackgroundGates:
    def test_critical_battery_suspends_background_sync(self, build_manager, remote):
        manager = build_manager(remote, start_background=True, enable_background_sync=True)
        assert manager.background_sync_active

        manager.monitor.update_battery(0.1, charging=False)
        assert manager.check_status().battery_status == BatteryStatus.CRITICAL
        assert not manager.background_sync_active
        assert manager.check_status().next_sync_time is None
        assert manager.run_background_sync() is None

        manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "x"})
        assert manager.manual_sync().operations_synced == 1

        manager.monitor.update_battery(0.8, charging=False)
        assert manager.background_sync_active
        assert manager.get_stats().battery_level == 0.8

    def test_background_sync_disabled(self, manager):
        assert not manager.background_sync_active
        assert manager.run_background_sync() is None

    def test_selective_sync_sends_priority_types(self, build_manager, remote):
        manager = build_manager(
            remote, enable_background_sync=True, enable_selective_sync=True, priority_sync=["invoice"]
        )
        manager.enqueue(OperationKind.UPDATE, "note", "n1", {"title": "x"})
        manager.enqueue(OperationKind.UPDATE, "invoice", "i1", {"total": 3})

        manager.run_background_sync()
        assert [op.entity_type for op in remote.pushed[0]] == ["invoice"]
        assert len(manager.get_pending_operations()) == 1

    def test_priority_types_are_boosted(self, build_manager):
        manager = build_manager(priority_sync=["invoice"])
        note = manager.enqueue(OperationKind.UPDATE, "note", "n1", {}, priority="critical")
        invoice = manager.enqueue(OperationKind.UPDATE, "invoice", "i1", {}, priority=Priority.LOW)
        assert invoice.priority == Priority.HIGH
        assert [op.id for op in manager.get_pending_operations()] == [note.id, invoice.id]

    def test_disable_offline_mode_stops_loops(self, build_manager):
        manager = build_manager(start_background=True, enable_background_sync=True)
        recorder = EventRecorder(manager.events)
        assert manager.health_checks_active

        manager.disable_offline_mode()
        assert not manager.background_sync_active
        assert not manager.health_checks_active
        assert not manager.check_status().offline_mode_enabled

        manager.enable_offline_mode()
        assert manager.background_sync_active
        assert EventKind.OFFLINE_MODE_DISABLED in recorder.kinds()
        assert EventKind.OFFLINE_MODE_ENABLED in recorder.kinds()


class TestStats:
    def test_sync_cycle_updates_stats(self, manager, remote):
        manager.enqueue(OperationKind.CREATE, "note", "n1", {"title": "a"})
        manager.enqueue(OperationKind.CREATE, "note", "n2", {"title": "b"})
        manager.manual_sync()

        stats = manager.get_stats()
        assert stats.total_operations == 2
        assert stats.successful_operations == 2
        assert stats.pending_operations == 0
        assert stats.sync_cycles == 1
        assert stats.data_synced == 240
        status = manager.check_status()
        assert status.last_sync_time is not None
        assert not status.is_syncing
        assert len(manager.get_sync_history()) == 1

    def test_failed_cycle_counts(self, build_manager):
        remote = FakeRemote().respond(TransientRemoteError("down"))
        manager = build_manager(remote)
        manager.enqueue(OperationKind.CREATE, "note", "n1", {"title": "a"})
        result = manager.manual_sync()
        assert not result.success
        assert manager.get_stats().sync_cycles == 1
        assert manager.get_stats().data_synced == 0

    def test_health_check_publishes(self, manager):
        recorder = EventRecorder(manager.events)
        report = manager.health_check()
        assert report.health == SyncHealth.HEALTHY
        event = recorder.of(EventKind.HEALTH_CHECK_COMPLETE)[0]
        assert event["status"].sync_health == SyncHealth.HEALTHY
        assert event["stats"].pending_operations == 0

    def test_returned_state_is_a_copy(self, manager):
        manager.get_stats().total_operations = 99
        manager.check_status().is_online = False
        assert manager.get_stats().total_operations == 0
        assert manager.check_status().is_online


class TestConfiguration:
    def test_configure_applies_and_persists(self, build_manager):
        manager = build_manager()
        recorder = EventRecorder(manager.events)
        config = manager.configure(sync_batch_size=10, max_retries=5)
        assert config.sync_batch_size == 10
        assert manager.sync_engine.batch_size == 10
        assert recorder.of(EventKind.CONFIGURATION_CHANGED)[0]["config"]["max_retries"] == 5
        manager.destroy()

        restarted = build_manager()
        assert restarted.get_config().sync_batch_size == 10
        assert restarted.sync_engine.batch_size == 10
        op = restarted.enqueue(OperationKind.CREATE, "note", "n1", {})
        assert op.max_retries == 5

    def test_invalid_configuration_keeps_previous(self, manager):
        with pytest.raises(ConfigurationError):
            manager.configure(sync_batch_size=0)
        with pytest.raises(ConfigurationError):
            manager.configure({"no_such_option": True})
        with pytest.raises(ConfigurationError):
            manager.configure(default_conflict_strategy="coin_flip")
        assert manager.get_config().sync_batch_size == 50

    def test_get_config_is_a_copy(self, manager):
        manager.get_config().sync_batch_size = 1
        assert manager.config.sync_batch_size == 50


class TestBackgroundLoop:
    def test_trigger_runs_target(self):
        ran = threading.Event()
        loop = BackgroundLoop("test-loop", 60.0, ran.set)
        loop.start()
        try:
            loop.trigger()
            assert ran.wait(5)
            assert loop.runs >= 1
        finally:
            loop.stop()
        assert not loop.is_running

    def test_failing_target_keeps_running(self):
        failed, done = threading.Event(), threading.Event()

        def target():
            if not failed.is_set():
                failed.set()
                raise RuntimeError("boom")
            done.set()

        loop = BackgroundLoop("test-loop", 60.0, target)
        loop.start()
        try:
            loop.trigger()
            assert failed.wait(5)
            loop.trigger()
            assert done.wait(5)
        finally:
            loop.stop()
