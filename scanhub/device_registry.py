from __future__ import annotations
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

log = logging.getLogger("scanhub.registry")

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"

DEFAULT_FIRMWARE = "1.0.0"


def iso_utc(epoch_s: float) -> str:
    return (
        datetime.fromtimestamp(epoch_s, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# ----------------------------- Data structs -----------------------------
class Device:
    __slots__ = ("device_id", "device_name", "ip_address", "firmware_version",
                 "ai_capable", "status", "last_seen", "total_scans")

    def __init__(self, device_id: str, device_name: Optional[str] = None,
                 ip_address: Optional[str] = None, firmware_version: Optional[str] = None,
                 ai_capable: bool = False, last_seen: float = 0.0):
        self.device_id        = str(device_id)
        self.device_name      = device_name or f"ESP32-{device_id}"
        self.ip_address       = ip_address or None
        self.firmware_version = firmware_version or DEFAULT_FIRMWARE
        self.ai_capable       = bool(ai_capable)
        self.status           = STATUS_CONNECTED
        self.last_seen        = float(last_seen)   # epoch seconds
        self.total_scans: int = 0

    def as_snapshot(self, now: float, stale_after_s: float) -> Dict:
        # status is derived on read; a silent device flips without any timer
        status = self.status
        if now - self.last_seen > stale_after_s:
            status = STATUS_DISCONNECTED
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "ipAddress": self.ip_address,
            "firmwareVersion": self.firmware_version,
            "aiCapable": self.ai_capable,
            "status": status,
            "lastSeen": iso_utc(self.last_seen),
            "totalScans": self.total_scans,
        }


# ----------------------------- Stores -----------------------------
class DeviceStore(ABC):
    """Keyed storage for Device entries. Swap in a persistent one if needed."""

    @abstractmethod
    def get(self, device_id: str) -> Optional[Device]:
        raise NotImplementedError

    @abstractmethod
    def put(self, device: Device) -> None:
        raise NotImplementedError

    @abstractmethod
    def values(self) -> Iterable[Device]:
        raise NotImplementedError


class InMemoryDeviceStore(DeviceStore):
    """Process-lifetime map; lost on restart."""

    def __init__(self):
        self._devices: Dict[str, Device] = {}

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def put(self, device: Device) -> None:
        self._devices[device.device_id] = device

    def values(self) -> Iterable[Device]:
        return list(self._devices.values())


class LatestScanSlot:
    """Single-value cache of the most recent scan record; last writer wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._scan: Optional[dict] = None

    def get(self) -> Optional[dict]:
        with self._lock:
            return self._scan

    def set(self, scan: dict) -> None:
        with self._lock:
            self._scan = scan

    def clear(self) -> None:
        with self._lock:
            self._scan = None


# ----------------------------- Registry -----------------------------
class DeviceRegistry:
    """
    Device bookkeeping for registered scanners.

    All operations are synchronous and in-memory. "Not found" is reported
    by returning None so callers can map it to a 404 at the HTTP boundary.
    The lock makes the map and per-device counters safe when the host runs
    handlers on worker threads.
    """

    def __init__(self, store: Optional[DeviceStore] = None, *,
                 stale_after_s: float = 60.0, capability_marker: str = "AI",
                 clock: Callable[[], float] = time.time):
        self.store = store or InMemoryDeviceStore()
        self.stale_after_s = float(stale_after_s)
        self.capability_marker = (capability_marker or "").upper()
        self._clock = clock
        self._lock = threading.RLock()

    def _default_capability(self, device_name: Optional[str]) -> bool:
        if not self.capability_marker or not device_name:
            return False
        return self.capability_marker in str(device_name).upper()

    def snapshot(self, device: Device) -> Dict:
        return device.as_snapshot(self._clock(), self.stale_after_s)

    # ---------- writes ----------
    def register_device(self, device_id: str, device_name: Optional[str] = None,
                        ip_address: Optional[str] = None,
                        firmware_version: Optional[str] = None,
                        ai_capable: Optional[bool] = None) -> Dict:
        """Insert or overwrite a device. A re-registering device keeps its scan count."""
        with self._lock:
            now = self._clock()
            prev = self.store.get(device_id)
            dev = Device(
                device_id=device_id,
                device_name=device_name,
                ip_address=ip_address,
                firmware_version=firmware_version,
                last_seen=now,
            )
            dev.ai_capable = (bool(ai_capable) if ai_capable is not None
                              else self._default_capability(dev.device_name))
            if prev is not None:
                dev.total_scans = prev.total_scans
            self.store.put(dev)
            log.info("device_registered id=%s name=%s ai=%s new=%s",
                     dev.device_id, dev.device_name, dev.ai_capable, prev is None)
            return self.snapshot(dev)

    def touch(self, device_id: str, *, auto_register: bool = False) -> Optional[Dict]:
        """
        Refresh lastSeen/status for a known device. Unknown ids return None
        unless auto_register is set, in which case a minimal record is created.
        """
        with self._lock:
            dev = self.store.get(device_id)
            if dev is None:
                if not auto_register:
                    return None
                dev = Device(device_id=device_id, last_seen=self._clock())
                dev.ai_capable = self._default_capability(dev.device_name)
                self.store.put(dev)
                log.info("device_auto_registered id=%s", device_id)
                return self.snapshot(dev)
            dev.last_seen = self._clock()
            dev.status = STATUS_CONNECTED
            return self.snapshot(dev)

    def increment_scan_count(self, device_id: str) -> Optional[Dict]:
        """Count one accepted scan and refresh lastSeen."""
        with self._lock:
            dev = self.store.get(device_id)
            if dev is None:
                return None
            dev.total_scans += 1
            dev.last_seen = self._clock()
            dev.status = STATUS_CONNECTED
            return self.snapshot(dev)

    # ---------- reads ----------
    def get(self, device_id: str) -> Optional[Dict]:
        with self._lock:
            dev = self.store.get(device_id)
            return None if dev is None else self.snapshot(dev)

    def is_ai_capable(self, device_id: str) -> bool:
        with self._lock:
            dev = self.store.get(device_id)
            return bool(dev and dev.ai_capable)

    def list_devices(self) -> List[Dict]:
        with self._lock:
            now = self._clock()
            return [d.as_snapshot(now, self.stale_after_s) for d in self.store.values()]

    def connected_count(self) -> int:
        return sum(1 for d in self.list_devices() if d["status"] == STATUS_CONNECTED)
