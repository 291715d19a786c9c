"""
scanhub/enrichment.py
---------------------
AI enrichment gateway for device scans.

Wraps one POST to the external analysis service
(`{server_url}/api/esp32/scan`) and guarantees a usable payload back:

  1) device already did the analysis (source == "ai_analysis" + productName)
     -> adopt it, tag source="esp32_ai", no network call
  2) policy says this device is not AI-capable
     -> fixed basic-scan payload, tag source="basic_scan", no network call
  3) otherwise call the service with a bounded timeout
     -> 2xx JSON object is the analysis
     -> anything else (non-2xx, timeout, connection error, bad JSON)
        becomes the fallback payload with fallback=True

Callers never see an exception from `enrich()`.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional

import httpx

log = logging.getLogger("scanhub.ai")

POLICY_ALWAYS = "always"
POLICY_CAPABILITY = "capability"

SOURCE_DEVICE_AI = "esp32_ai"
SOURCE_BASIC = "basic_scan"


# ------------------------------------------------------------
# Payload builders
# ------------------------------------------------------------

def precomputed_analysis(body: Mapping[str, Any], barcode: str, device_id: str) -> Optional[Dict[str, Any]]:
    """Return the device-supplied analysis, or None when the body carries none."""
    name = body.get("productName")
    if body.get("source") != "ai_analysis" or not name:
        return None
    name = str(name)
    ptype = str(body["productType"]) if body.get("productType") else None
    category = body.get("productCategory")
    details = body.get("productDetails")
    return {
        "success": True,
        "title": name,
        "category": str(category) if category else (ptype or "Scanned Product"),
        "description": str(details) if details else f"Product: {name}",
        "description_short": f"{name} - {ptype or 'Product'}",
        "country": "Unknown",
        "barcode": barcode,
        "deviceId": device_id,
        "source": SOURCE_DEVICE_AI,
    }


def fallback_analysis(barcode: str, device_id: str, reason: str = "unavailable") -> Dict[str, Any]:
    prefix = barcode[:20]
    return {
        "success": True,
        "title": f"{prefix} (unidentified product)",
        "category": "Scanned Product",
        "description": (
            "Product scanned successfully. The AI analysis service is "
            f"{reason}, so only the raw barcode is shown."
        ),
        "description_short": f"Scanned: {barcode[:30]}",
        "country": "Unknown",
        "barcode": barcode,
        "deviceId": device_id,
        "fallback": True,
    }


def basic_analysis(barcode: str, device_id: str) -> Dict[str, Any]:
    return {
        "success": True,
        "title": f"{barcode[:20]} (basic scan)",
        "category": "Basic Scan",
        "description": "Basic scan from a device without AI capability.",
        "description_short": f"Scanned: {barcode[:30]}",
        "country": "Unknown",
        "barcode": barcode,
        "deviceId": device_id,
        "source": SOURCE_BASIC,
    }


# ------------------------------------------------------------
# Gateway
# ------------------------------------------------------------

class AiEnrichmentGateway:
    """
    Posts scans to the AI analysis service.

    `transport` lets tests and embedders plug an httpx transport
    (e.g. httpx.MockTransport) without touching the network.
    """

    def __init__(
        self,
        server_url: str,
        *,
        timeout_s: float = 15.0,
        policy: str = POLICY_ALWAYS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.policy = (policy or POLICY_ALWAYS).lower()
        if self.policy not in (POLICY_ALWAYS, POLICY_CAPABILITY):
            raise ValueError(f"Unknown ai.policy: {policy!r}")
        self._transport = transport

        # Observability counters (simple integers; emitted in logs)
        self.calls = 0
        self.fallbacks = 0

    @property
    def endpoint(self) -> str:
        return f"{self.server_url}/api/esp32/scan"

    def should_call_service(self, ai_capable: bool) -> bool:
        return self.policy == POLICY_ALWAYS or bool(ai_capable)

    async def enrich(
        self,
        barcode_data: str,
        device_id: str,
        device_name: str,
        scan_type: str,
        timestamp: Any,
        *,
        body: Optional[Mapping[str, Any]] = None,
        ai_capable: bool = True,
    ) -> Dict[str, Any]:
        pre = precomputed_analysis(body or {}, barcode_data, device_id)
        if pre is not None:
            log.info("ai_precomputed device=%s title=%s", device_id, pre["title"])
            return pre

        if not self.should_call_service(ai_capable):
            log.info("ai_skipped_basic device=%s", device_id)
            return basic_analysis(barcode_data, device_id)

        analysis = await self._call_service({
            "barcodeData": barcode_data,
            "deviceId": device_id,
            "deviceName": device_name,
            "scanType": scan_type,
            "timestamp": timestamp,
        })
        if analysis is None:
            self.fallbacks += 1
            return fallback_analysis(barcode_data, device_id)
        return analysis

    async def _call_service(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls += 1
        t0 = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                resp = await client.post(self.endpoint, json=payload)
        except httpx.TimeoutException:
            log.warning("ai_timeout url=%s timeout_s=%s", self.endpoint, self.timeout_s)
            return None
        except httpx.HTTPError as e:
            log.warning("ai_unreachable url=%s err=%s", self.endpoint, e)
            return None

        latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        if not (200 <= resp.status_code < 300):
            log.warning("ai_non_2xx status=%s latency_ms=%s body=%s",
                        resp.status_code, latency_ms, resp.text[:200])
            return None
        try:
            data = resp.json()
        except ValueError:
            log.warning("ai_bad_json latency_ms=%s", latency_ms)
            return None
        if not isinstance(data, dict):
            log.warning("ai_bad_shape type=%s", type(data).__name__)
            return None

        log.info("ai_ok device=%s latency_ms=%s", payload.get("deviceId"), latency_ms)
        return data
