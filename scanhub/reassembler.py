"""
scanhub/reassembler.py
----------------------
Client-side reassembly of scan events into one displayable "latest scan".

The server may deliver one physical scan as several events
(esp32_barcode_scan then esp32_scan_processed, or a seed replay), and a
device may send fields piecemeal. The reassembler only shows a scan once it
is complete and debounces bursts so the UI does not flicker.

States
------
  IDLE       nothing buffered
  BUFFERING  fields merged; settle timer armed (re-armed on every event)
  COOLDOWN   a scan was just promoted; new events collect into the next
             buffer but are not evaluated until the cooldown timer fires

Rules
-----
- Only events from recognised scanners are taken (deviceName contains one
  of the markers, or source is one of the known tags; case-insensitive).
- Merge is last-writer-wins per field, except a buffered aiAnalysis is kept
  when the new event has none (null or missing).
- Complete = non-empty barcodeData + deviceName + scanType.
- Promotion forces source="ESP32" so the scan is eligible for saving.
- A re-delivery of the scan id that was just promoted is dropped.

Timers go through `call_later(delay_s, callback) -> handle` (handle has
.cancel()). Default is the running asyncio loop; tests pass a fake.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

log = logging.getLogger("scanhub.reassembler")

SAVE_SOURCE = "ESP32"
DEFAULT_NAME_MARKERS = ("Scanner", "ESP32-", "Robridge")
DEFAULT_SOURCES = ("esp32", "esp32_basic", "esp32_live_scanner")


class ReassemblerState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    COOLDOWN = "cooldown"


class ScanReassembler:
    def __init__(
        self,
        on_promote: Optional[Callable[[Dict[str, Any]], None]] = None,
        *,
        settle_ms: int = 500,
        cooldown_ms: int = 2000,
        device_name_markers: Iterable[str] = DEFAULT_NAME_MARKERS,
        sources: Iterable[str] = DEFAULT_SOURCES,
        call_later: Optional[Callable[[float, Callable[[], None]], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.on_promote = on_promote
        self.settle_s = settle_ms / 1000.0
        self.cooldown_s = cooldown_ms / 1000.0
        self.name_markers = tuple(m.lower() for m in device_name_markers if m)
        self.sources = {str(s).lower() for s in sources}
        self._call_later = call_later
        self._clock = clock

        self.state = ReassemblerState.IDLE
        self.buffer: Dict[str, Any] = {}
        self.latest_scan: Optional[Dict[str, Any]] = None
        self.promotions = 0
        self._settle_handle = None
        self._cooldown_handle = None
        self._last_promoted_id: Optional[str] = None

    # ---------- predicates ----------
    def is_esp32_event(self, data: Dict[str, Any]) -> bool:
        name = str(data.get("deviceName") or "").lower()
        if name and any(m in name for m in self.name_markers):
            return True
        return str(data.get("source") or "").lower() in self.sources

    @staticmethod
    def is_complete(buf: Dict[str, Any]) -> bool:
        barcode = buf.get("barcodeData")
        return (
            isinstance(barcode, str)
            and len(barcode.strip()) > 0
            and bool(buf.get("deviceName"))
            and bool(buf.get("scanType"))
        )

    # ---------- timers ----------
    def _later(self, delay_s: float, cb: Callable[[], None]):
        if self._call_later is not None:
            return self._call_later(delay_s, cb)
        return asyncio.get_running_loop().call_later(delay_s, cb)

    def _arm_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
        self._settle_handle = self._later(self.settle_s, self._on_settle)

    # ---------- input ----------
    def feed(self, data: Any, event_type: Optional[str] = None) -> bool:
        """Merge one event. Returns False when the event was ignored."""
        if not isinstance(data, dict) or not self.is_esp32_event(data):
            log.debug("skip_non_esp32 event=%s", event_type)
            return False

        prev_ai = self.buffer.get("aiAnalysis")
        merged = {**self.buffer, **data}
        merged["aiAnalysis"] = data.get("aiAnalysis") or prev_ai
        merged["lastUpdate"] = int(self._clock() * 1000)
        merged["eventType"] = event_type
        self.buffer = merged

        if self.state is ReassemblerState.COOLDOWN:
            return True
        self.state = ReassemblerState.BUFFERING
        self._arm_settle()
        return True

    def reset(self) -> None:
        """Drop everything and unlatch."""
        for h in (self._settle_handle, self._cooldown_handle):
            if h is not None:
                h.cancel()
        self._settle_handle = None
        self._cooldown_handle = None
        self.buffer = {}
        self.state = ReassemblerState.IDLE

    # ---------- transitions ----------
    def _on_settle(self) -> None:
        self._settle_handle = None
        if self.state is not ReassemblerState.BUFFERING:
            return
        if not self.is_complete(self.buffer):
            return
        if self.buffer.get("id") and self.buffer.get("id") == self._last_promoted_id:
            log.debug("drop_redelivery id=%s", self._last_promoted_id)
            self.buffer = {}
            self.state = ReassemblerState.IDLE
            return
        self._promote()

    def _promote(self) -> None:
        buf = self.buffer
        scan = {
            **buf,
            "timestamp": buf.get("timestamp") or int(self._clock() * 1000),
            "source": SAVE_SOURCE,
            "aiAnalysis": buf.get("aiAnalysis"),
        }
        self.latest_scan = scan
        self.promotions += 1
        self._last_promoted_id = buf.get("id")
        self.buffer = {}
        self.state = ReassemblerState.COOLDOWN
        self._cooldown_handle = self._later(self.cooldown_s, self._on_cooldown_done)
        log.info("scan_promoted id=%s barcode=%s", scan.get("id"), scan.get("barcodeData"))
        if self.on_promote is not None:
            self.on_promote(scan)

    def _on_cooldown_done(self) -> None:
        self._cooldown_handle = None
        if not self.buffer:
            self.state = ReassemblerState.IDLE
            return
        # events that arrived during the cooldown get their own settle window
        self.state = ReassemblerState.BUFFERING
        self._arm_settle()
