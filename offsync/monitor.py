"""Connectivity and resource monitoring.

ConnectivityMonitor is an event source with no persistent state. It reports
online/offline transitions, battery changes and storage pressure, and probes
connection quality on demand. Platform specifics sit behind ResourceMonitor:
PsutilResourceMonitor reads the OS through psutil, StaticResourceMonitor is
the headless stand-in with fixed or settable readings.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import httpx
import psutil

from offsync.events import EventBus, EventKind
from offsync.types import BatteryStatus, ConnectionQuality, StorageInfo

logger = logging.getLogger(__name__)

# Latency thresholds for connection quality (ms)
EXCELLENT_LATENCY_MS = 100
GOOD_LATENCY_MS = 500

# Battery level below which background work is suspended (0.0-1.0)
CRITICAL_BATTERY_LEVEL = 0.2


def classify_latency(latency_ms: float) -> ConnectionQuality:
    if latency_ms < EXCELLENT_LATENCY_MS:
        return ConnectionQuality.EXCELLENT
    if latency_ms < GOOD_LATENCY_MS:
        return ConnectionQuality.GOOD
    return ConnectionQuality.POOR


def battery_status_for(level: float, charging: bool) -> BatteryStatus:
    if charging:
        return BatteryStatus.CHARGING
    if level < CRITICAL_BATTERY_LEVEL:
        return BatteryStatus.CRITICAL
    return BatteryStatus.DISCHARGING


@dataclass
class BatteryReading:
    level: float  # 0.0-1.0
    charging: bool


@dataclass
class DiskReading:
    used: int
    free: int


class ResourceMonitor(ABC):
    """Platform seam for battery and disk readings."""

    @abstractmethod
    def battery(self) -> Optional[BatteryReading]:
        """Current battery reading, or None when the device has no battery."""
        ...

    @abstractmethod
    def disk(self, path: Union[str, Path]) -> DiskReading:
        ...


class PsutilResourceMonitor(ResourceMonitor):
    """Reads battery and disk figures from the operating system."""

    def battery(self) -> Optional[BatteryReading]:
        sensors_battery = getattr(psutil, "sensors_battery", None)
        if sensors_battery is None:
            return None
        reading = sensors_battery()
        if reading is None:
            return None
        return BatteryReading(
            level=max(0.0, min(reading.percent / 100.0, 1.0)),
            charging=bool(reading.power_plugged),
        )

    def disk(self, path: Union[str, Path]) -> DiskReading:
        usage = psutil.disk_usage(str(path))
        return DiskReading(used=usage.used, free=usage.free)


class StaticResourceMonitor(ResourceMonitor):
    """Fixed readings for servers, CI and tests. Mains-powered by default."""

    def __init__(
        self,
        battery_level: Optional[float] = None,
        charging: bool = True,
        disk_used: int = 0,
        disk_free: int = 1 << 40,
    ):
        self._battery = (
            BatteryReading(level=battery_level, charging=charging)
            if battery_level is not None
            else None
        )
        self._disk = DiskReading(used=disk_used, free=disk_free)

    def set_battery(self, level: float, charging: bool = False) -> None:
        self._battery = BatteryReading(level=level, charging=charging)

    def set_disk(self, used: int, free: int) -> None:
        self._disk = DiskReading(used=used, free=free)

    def battery(self) -> Optional[BatteryReading]:
        return self._battery

    def disk(self, path: Union[str, Path]) -> DiskReading:
        return self._disk


class ConnectivityMonitor:
    """Tracks connectivity, battery and storage, emitting events on change.

    Args:
        probe_url: URL for the HEAD round-trip probe. Without one, quality is
            whatever was last reported.
        timeout_ms: Probe timeout. A probe that does not answer in time
            counts as offline.
        resources: Battery and disk readings (defaults to psutil).
        storage_path: Directory whose disk is watched.
        storage_info_fn: Returns the operation log's usage, combined with the
            disk reading when polling storage.
        client: Pre-built httpx client (tests pass one with a MockTransport).
    """

    def __init__(
        self,
        probe_url: Optional[str] = None,
        *,
        timeout_ms: int = 5000,
        resources: Optional[ResourceMonitor] = None,
        storage_path: Union[str, Path] = ".",
        storage_info_fn: Optional[Callable[[], StorageInfo]] = None,
        client: Optional[httpx.Client] = None,
        online: bool = False,
    ):
        self.probe_url = probe_url
        self.timeout_ms = timeout_ms
        self.resources = resources or PsutilResourceMonitor()
        self.storage_path = storage_path
        self.storage_info_fn = storage_info_fn
        self.events = EventBus()
        self._client = client or httpx.Client()
        self._owns_client = client is None
        self._lock = threading.Lock()
        self._online = online
        self.quality = ConnectionQuality.EXCELLENT if online else ConnectionQuality.OFFLINE
        self.last_latency_ms = -1.0
        self.battery_level: Optional[float] = None
        self.battery_status: Optional[BatteryStatus] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._interval_s: Optional[float] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """Record connectivity. Emits online/offline only on a transition."""
        with self._lock:
            changed = online != self._online
            self._online = online
            if not online:
                self.quality = ConnectionQuality.OFFLINE
            elif self.quality == ConnectionQuality.OFFLINE:
                # Unprobed connections are assumed good until measured
                self.quality = ConnectionQuality.EXCELLENT
        if changed:
            logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
            self.events.publish(EventKind.ONLINE if online else EventKind.OFFLINE)
        return changed

    def probe_connection_quality(self) -> ConnectionQuality:
        """Time a HEAD request to the probe URL and classify the latency."""
        if not self.probe_url:
            return self.quality

        started = time.monotonic()
        try:
            self._client.head(self.probe_url, timeout=self.timeout_ms / 1000.0)
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            self.last_latency_ms = -1.0
            self.set_online(False)
            return ConnectionQuality.OFFLINE

        # Any HTTP answer means the origin is reachable
        self.last_latency_ms = (time.monotonic() - started) * 1000
        quality = classify_latency(self.last_latency_ms)
        with self._lock:
            self.quality = quality
        self.set_online(True)
        return quality

    def update_battery(self, level: float, charging: bool) -> BatteryStatus:
        """Record a battery reading; emits batteryChanged when it differs."""
        level = max(0.0, min(level, 1.0))
        status = battery_status_for(level, charging)
        with self._lock:
            changed = level != self.battery_level or status != self.battery_status
            self.battery_level = level
            self.battery_status = status
        if changed:
            self.events.publish(EventKind.BATTERY_CHANGED, level=level, status=status)
        return status

    def update_storage(self, used: int, available: int) -> None:
        self.events.publish(EventKind.STORAGE_CHANGED, used=used, available=available)

    def poll_resources(self) -> None:
        """Read battery and storage figures and emit the matching events."""
        battery = self.resources.battery()
        if battery is not None:
            self.update_battery(battery.level, battery.charging)

        disk = self.resources.disk(self.storage_path)
        if self.storage_info_fn is not None:
            info = self.storage_info_fn()
            self.update_storage(info.used, min(info.available, disk.free))
        else:
            self.update_storage(disk.used, disk.free)

    # === Background polling ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_s: float = 30.0) -> None:
        """Poll connectivity and resources every ``interval_s`` seconds.

        Restarts the poller when the interval changes.
        """
        if self.is_running:
            if interval_s == self._interval_s:
                return
            self.stop()
        self._interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._monitor_loop,
            args=(interval_s, self._stop_event),
            daemon=True,
            name="offsync-monitor",
        )
        self._thread.start()
        logger.debug(f"Connectivity monitor started (interval={interval_s}s)")

    def stop(self) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        # A handler running on the poller may stop it
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _monitor_loop(self, interval_s: float, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.probe_connection_quality()
                self.poll_resources()
            except Exception as e:
                logger.error(f"Monitor poll failed: {e}", exc_info=True)
            stop_event.wait(interval_s)

    def close(self) -> None:
        self.stop()
        if self._owns_client:
            self._client.close()
