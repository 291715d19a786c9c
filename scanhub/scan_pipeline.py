from __future__ import annotations

"""
scanhub/scan_pipeline.py
------------------------
One pass per incoming device scan:

  1) validate      device registered? barcodeData non-empty?
  2) device stats  totalScans += 1, lastSeen = now
  3) enrichment    gateway decides precomputed / basic / AI call / fallback
  4) record        scan_<ms>_<deviceId> with the analysis embedded
  5) persist       best effort; a failed insert is logged, never raised
  6) latest slot   unconditional overwrite
  7) broadcast     esp32_barcode_scan + esp32_scan_processed, same payload

The registry update and the insert are independent writes: a crash between
them can leave the counter bumped without a stored row. Device stats are a
soft counter, the scans table is the record.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .broadcaster import EVENT_BARCODE_SCAN, EVENT_SCAN_PROCESSED, RealtimeBroadcaster
from .device_registry import DeviceRegistry, LatestScanSlot
from .enrichment import AiEnrichmentGateway
from .persistence import ScanStore

log = logging.getLogger("scanhub.pipeline")

REASON_UNKNOWN_DEVICE = "device_not_registered"
REASON_MISSING_BARCODE = "missing_barcode"


@dataclass
class IngestResult:
    accepted: bool
    reason: Optional[str] = None
    scan: Optional[Dict[str, Any]] = None
    persisted: bool = False
    db: Dict[str, Any] = field(default_factory=dict)

    @property
    def scan_id(self) -> Optional[str]:
        return self.scan["id"] if self.scan else None

    @property
    def ai_analysis(self) -> Optional[Dict[str, Any]]:
        return self.scan["aiAnalysis"] if self.scan else None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ScanPipeline:
    def __init__(
        self,
        registry: DeviceRegistry,
        gateway: AiEnrichmentGateway,
        scans: ScanStore,
        latest: LatestScanSlot,
        broadcaster: RealtimeBroadcaster,
        *,
        now_ms: Callable[[], int] = _now_ms,
    ):
        self.registry = registry
        self.gateway = gateway
        self.scans = scans
        self.latest = latest
        self.broadcaster = broadcaster
        self._now_ms = now_ms

        self.scans_accepted = 0
        self.scans_rejected = 0
        self.persist_failures = 0

    async def ingest(self, device_id: str, body: Mapping[str, Any]) -> IngestResult:
        device = self.registry.get(device_id)
        if device is None:
            self.scans_rejected += 1
            log.info("scan_rejected device=%s reason=%s", device_id, REASON_UNKNOWN_DEVICE)
            return IngestResult(accepted=False, reason=REASON_UNKNOWN_DEVICE)

        barcode = body.get("barcodeData")
        barcode = str(barcode) if barcode is not None else ""
        if not barcode.strip():
            self.scans_rejected += 1
            log.info("scan_rejected device=%s reason=%s", device_id, REASON_MISSING_BARCODE)
            return IngestResult(accepted=False, reason=REASON_MISSING_BARCODE)

        device = self.registry.increment_scan_count(device_id) or device
        device_name = device["deviceName"]
        scan_type = str(body.get("scanType") or "unknown")
        timestamp = body.get("timestamp")

        analysis = await self.gateway.enrich(
            barcode,
            device_id,
            device_name,
            str(body.get("scanType") or "ESP32_SCAN"),
            timestamp or self._now_ms(),
            body=body,
            ai_capable=bool(device.get("aiCapable")),
        )

        scan = {
            "id": f"scan_{self._now_ms()}_{device_id}",
            "deviceId": device_id,
            "deviceName": device_name,
            "barcodeData": barcode,
            "scanType": scan_type,
            "imageData": str(body["imageData"]) if body.get("imageData") else None,
            "timestamp": timestamp or _now_iso(),
            "source": "esp32",
            "processed": True,
            "aiAnalysis": analysis,
        }

        result = IngestResult(accepted=True, scan=scan)
        try:
            result.db = await self.scans.insert_scan(
                barcode_data=barcode,
                barcode_type=scan_type,
                source="esp32",
                product_name=analysis.get("title") or "Unknown Product",
                product_id=barcode,
                category=analysis.get("category") or "Unknown",
                metadata={
                    "deviceName": device_name,
                    "deviceId": device_id,
                    "scanType": scan_type,
                    "timestamp": scan["timestamp"],
                    "aiAnalysis": analysis,
                    "description": analysis.get("description") or "No AI analysis available",
                    "country": analysis.get("country"),
                },
            )
            result.persisted = True
        except Exception:
            # accepted scans still go out even when the store is down
            self.persist_failures += 1
            log.exception("scan_persist_failed device=%s barcode=%s", device_id, barcode)

        self.latest.set(scan)
        await self.broadcaster.emit_many([EVENT_BARCODE_SCAN, EVENT_SCAN_PROCESSED], scan)

        self.scans_accepted += 1
        log.info(
            "scan_accepted id=%s device=%s barcode=%s fallback=%s persisted=%s clients=%d",
            scan["id"], device_id, barcode, bool(analysis.get("fallback")),
            result.persisted, self.broadcaster.client_count,
        )
        return result
