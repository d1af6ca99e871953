"""Tests for connectivity and resource monitoring."""

import threading
from collections import namedtuple
from unittest.mock import patch

import httpx
import pytest

from conftest import EventRecorder
from offsync.events import EventKind
from offsync.monitor import (
    ConnectivityMonitor,
    PsutilResourceMonitor,
    StaticResourceMonitor,
    battery_status_for,
    classify_latency,
)
from offsync.types import BatteryStatus, ConnectionQuality, StorageInfo


def probing_monitor(handler, **kwargs) -> ConnectivityMonitor:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ConnectivityMonitor(
        "https://origin.test/health", client=client, resources=StaticResourceMonitor(), **kwargs
    )


class TestClassification:
    @pytest.mark.parametrize(
        "latency, expected",
        [(20, ConnectionQuality.EXCELLENT), (250, ConnectionQuality.GOOD), (900, ConnectionQuality.POOR)],
    )
    def test_latency_thresholds(self, latency, expected):
        assert classify_latency(latency) == expected

    def test_battery_status(self):
        assert battery_status_for(0.1, charging=True) == BatteryStatus.CHARGING
        assert battery_status_for(0.1, charging=False) == BatteryStatus.CRITICAL
        assert battery_status_for(0.5, charging=False) == BatteryStatus.DISCHARGING


class TestConnectivity:
    def test_transitions_emit_once(self, monitor):
        recorder = EventRecorder(monitor.events)
        assert monitor.set_online(False)
        assert not monitor.set_online(False)
        assert monitor.set_online(True)
        assert recorder.kinds() == [EventKind.OFFLINE, EventKind.ONLINE]

    def test_offline_sets_quality_offline(self, monitor):
        monitor.set_online(False)
        assert monitor.quality == ConnectionQuality.OFFLINE
        monitor.set_online(True)
        assert monitor.quality != ConnectionQuality.OFFLINE

    def test_successful_probe_goes_online(self):
        monitor = probing_monitor(lambda r: httpx.Response(204))
        recorder = EventRecorder(monitor.events)
        quality = monitor.probe_connection_quality()
        assert quality != ConnectionQuality.OFFLINE
        assert monitor.is_online
        assert monitor.last_latency_ms >= 0
        assert recorder.kinds() == [EventKind.ONLINE]

    def test_any_http_status_counts_as_reachable(self):
        monitor = probing_monitor(lambda r: httpx.Response(503))
        monitor.probe_connection_quality()
        assert monitor.is_online

    def test_failed_probe_goes_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        monitor = probing_monitor(handler, online=True)
        recorder = EventRecorder(monitor.events)
        assert monitor.probe_connection_quality() == ConnectionQuality.OFFLINE
        assert not monitor.is_online
        assert monitor.last_latency_ms == -1.0
        assert recorder.kinds() == [EventKind.OFFLINE]

    def test_probe_uses_head_with_timeout(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(200)

        probing_monitor(handler, timeout_ms=1500).probe_connection_quality()
        assert seen["method"] == "HEAD"
        assert seen["timeout"]["read"] == 1.5

    def test_without_probe_url_quality_is_unchanged(self, monitor):
        assert monitor.probe_connection_quality() == monitor.quality


class TestResources:
    def test_battery_change_emits(self, monitor):
        recorder = EventRecorder(monitor.events)
        assert monitor.update_battery(0.15, charging=False) == BatteryStatus.CRITICAL
        monitor.update_battery(0.15, charging=False)
        events = recorder.of(EventKind.BATTERY_CHANGED)
        assert len(events) == 1
        assert events[0]["status"] == BatteryStatus.CRITICAL
        assert events[0]["level"] == 0.15

    def test_poll_reads_static_resources(self, tmp_path):
        resources = StaticResourceMonitor(battery_level=0.5, charging=False, disk_used=10, disk_free=500)
        monitor = ConnectivityMonitor(resources=resources, storage_path=tmp_path)
        recorder = EventRecorder(monitor.events)
        monitor.poll_resources()
        battery = recorder.of(EventKind.BATTERY_CHANGED)[0]
        storage = recorder.of(EventKind.STORAGE_CHANGED)[0]
        assert battery["status"] == BatteryStatus.DISCHARGING
        assert (storage["used"], storage["available"]) == (10, 500)
        monitor.close()

    def test_poll_combines_store_usage_with_disk(self, tmp_path):
        resources = StaticResourceMonitor(disk_free=300)
        monitor = ConnectivityMonitor(
            resources=resources,
            storage_path=tmp_path,
            storage_info_fn=lambda: StorageInfo(used=40, available=1000, quota=1040),
        )
        recorder = EventRecorder(monitor.events)
        monitor.poll_resources()
        storage = recorder.of(EventKind.STORAGE_CHANGED)[0]
        assert (storage["used"], storage["available"]) == (40, 300)
        monitor.close()

    def test_mains_powered_device_reports_no_battery(self, tmp_path):
        monitor = ConnectivityMonitor(resources=StaticResourceMonitor(), storage_path=tmp_path)
        recorder = EventRecorder(monitor.events)
        monitor.poll_resources()
        assert recorder.of(EventKind.BATTERY_CHANGED) == []
        monitor.close()


class TestPsutilResourceMonitor:
    def test_battery_reading(self):
        Battery = namedtuple("Battery", "percent secsleft power_plugged")
        with patch("offsync.monitor.psutil.sensors_battery", return_value=Battery(42.0, 100, False)):
            reading = PsutilResourceMonitor().battery()
        assert reading.level == pytest.approx(0.42)
        assert reading.charging is False

    def test_no_battery(self):
        with patch("offsync.monitor.psutil.sensors_battery", return_value=None):
            assert PsutilResourceMonitor().battery() is None

    def test_disk_reading(self, tmp_path):
        reading = PsutilResourceMonitor().disk(tmp_path)
        assert reading.free > 0


class TestPolling:
    def test_background_poll_starts_and_stops(self, monitor):
        monitor.start(interval_s=0.01)
        assert monitor.is_running
        monitor.stop()
        assert not monitor.is_running
        assert monitor._thread is None

    def test_poll_detects_connectivity(self):
        reachable = threading.Event()
        monitor = probing_monitor(lambda r: httpx.Response(204))
        monitor.events.subscribe(EventKind.ONLINE, lambda event: reachable.set())
        monitor.start(interval_s=60)
        assert reachable.wait(5)
        assert monitor.is_online
        monitor.close()

    def test_interval_change_restarts_poller(self, monitor):
        monitor.start(interval_s=60)
        original = monitor._thread
        monitor.start(interval_s=60)
        assert monitor._thread is original

        monitor.start(interval_s=30)
        assert monitor._thread is not original
        assert not original.is_alive()
        assert monitor.is_running
        monitor.stop()

    def test_handler_can_stop_the_poller(self):
        stopped = threading.Event()
        monitor = probing_monitor(lambda r: httpx.Response(200))

        def on_online(event):
            monitor.stop()
            stopped.set()

        monitor.events.subscribe(EventKind.ONLINE, on_online)
        monitor.start(interval_s=60)
        assert stopped.wait(5)
        assert monitor._thread is None
        monitor.close()
