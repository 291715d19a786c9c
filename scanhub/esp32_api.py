"""
esp32_api.py
------------
FastAPI router for the scanner devices and the live dashboard feed.

Device-facing:
  POST /api/esp32/register            register or re-register a scanner
  POST /api/esp32/ping/{deviceId}     heartbeat (404 for unknown ids)
  GET  /api/esp32/ping/{deviceId}     heartbeat that auto-registers
  POST /api/esp32/scan/{deviceId}     submit one barcode read
  GET  /api/esp32/scan                self-describing docs for the above

Dashboard-facing:
  GET  /api/esp32/devices             device list with derived status
  GET  /api/esp32/latest-scan         most recent accepted scan (or null)
  WS   /ws?since=<seq>                live events, seeded on connect
  GET  /api/esp32/stream?since=<seq>  the same feed as Server-Sent Events

Services live on `app.state.services` (see server.create_app). Error
bodies are rendered by the app-level HTTPException handler as
{"success": false, "error": <detail>}.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, field_validator

from .broadcaster import EVENT_DEVICE_CONNECTED
from .scan_pipeline import REASON_MISSING_BARCODE, REASON_UNKNOWN_DEVICE

log = logging.getLogger("scanhub.api")

router = APIRouter(tags=["esp32"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class RegisterDeviceIn(BaseModel):
    deviceId: str
    deviceName: Optional[str] = None
    ipAddress: Optional[str] = None
    firmwareVersion: Optional[str] = None
    aiCapable: Optional[bool] = None

    @field_validator("deviceId")
    @classmethod
    def _id_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("deviceId must not be empty")
        return v


class ScanIn(BaseModel):
    """
    One device read. Every field is optional and untyped: firmware versions
    differ in what they send, and the pipeline coerces what it needs. Extra
    keys are kept and passed through.
    """
    model_config = ConfigDict(extra="allow")

    barcodeData: Optional[Any] = None
    scanType: Optional[Any] = None
    imageData: Optional[Any] = None
    timestamp: Optional[Any] = None
    # device-side analysis (source == "ai_analysis")
    source: Optional[Any] = None
    productName: Optional[Any] = None
    productType: Optional[Any] = None
    productCategory: Optional[Any] = None
    productDetails: Optional[Any] = None


# ---------------------------------------------------------------------------
# Device endpoints
# ---------------------------------------------------------------------------

@router.post("/api/esp32/register")
async def register_device(req: RegisterDeviceIn, request: Request):
    svc = request.app.state.services
    device = svc.registry.register_device(
        req.deviceId,
        device_name=req.deviceName,
        ip_address=req.ipAddress,
        firmware_version=req.firmwareVersion,
        ai_capable=req.aiCapable,
    )
    await svc.broadcaster.emit(EVENT_DEVICE_CONNECTED, device)
    return {
        "success": True,
        "message": "Device registered successfully",
        "deviceId": device["deviceId"],
    }


@router.post("/api/esp32/ping/{device_id}")
async def ping_device(device_id: str, request: Request):
    svc = request.app.state.services
    device = svc.registry.touch(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"success": True, "timestamp": device["lastSeen"]}


@router.get("/api/esp32/ping/{device_id}")
async def ping_device_get(device_id: str, request: Request):
    """Browser-friendly heartbeat; unknown ids get a minimal registration."""
    svc = request.app.state.services
    known = svc.registry.get(device_id) is not None
    device = svc.registry.touch(device_id, auto_register=True)
    if known:
        return {"success": True, "timestamp": device["lastSeen"], "method": "GET"}

    await svc.broadcaster.emit(EVENT_DEVICE_CONNECTED, device)
    return {
        "success": True,
        "timestamp": device["lastSeen"],
        "message": "Device registered",
        "method": "GET",
    }


@router.get("/api/esp32/devices")
async def list_devices(request: Request):
    devices = request.app.state.services.registry.list_devices()
    return {"success": True, "devices": devices, "totalDevices": len(devices)}


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

@router.get("/api/esp32/scan")
async def scan_endpoint_docs():
    return {
        "message": "ESP32 Barcode Scan Endpoint",
        "method": "POST",
        "url": "/api/esp32/scan/{deviceId}",
        "description": "Send barcode scan data from a registered scanner",
        "requiredParams": {"deviceId": "Device identifier (in URL path)"},
        "requiredBody": {
            "barcodeData": "The scanned barcode or QR code data",
            "scanType": "Type of scan (optional)",
            "imageData": "Base64 image data (optional)",
            "timestamp": "Scan timestamp (optional)",
        },
        "example": {
            "url": "/api/esp32/scan/my-device-001",
            "method": "POST",
            "body": {"barcodeData": "1234567890123", "scanType": "barcode"},
        },
    }


@router.post("/api/esp32/scan/{device_id}")
async def submit_scan(device_id: str, request: Request):
    svc = request.app.state.services
    # unknown devices get 404 whatever the body looks like
    if svc.registry.get(device_id) is None:
        raise HTTPException(status_code=404, detail="Device not registered")

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}
    payload = ScanIn.model_validate(body)
    result = await svc.pipeline.ingest(device_id, payload.model_dump())

    if not result.accepted:
        if result.reason == REASON_UNKNOWN_DEVICE:
            raise HTTPException(status_code=404, detail="Device not registered")
        if result.reason == REASON_MISSING_BARCODE:
            raise HTTPException(status_code=400, detail="barcodeData is required")
        raise HTTPException(status_code=400, detail=result.reason or "scan rejected")

    return {
        "success": True,
        "message": "Barcode scan received and processed with AI",
        "scanId": result.scan_id,
        "aiAnalysis": result.ai_analysis,
    }


@router.get("/api/esp32/latest-scan")
async def latest_scan(request: Request):
    return {"success": True, "scan": request.app.state.services.latest.get()}


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------

@router.websocket("/ws")
async def live_feed(websocket: WebSocket, since: Optional[int] = None):
    svc = websocket.app.state.services
    await svc.broadcaster.connect(
        websocket,
        lambda: svc.broadcaster.seed_messages(svc.registry.list_devices(), svc.latest.get(), since=since),
    )
    try:
        # inbound frames are keepalives only
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        log.debug("ws_client_left")
    finally:
        await svc.broadcaster.disconnect(websocket)


@router.get("/api/esp32/stream")
async def live_feed_sse(request: Request, since: Optional[int] = None):
    """EventSource mirror of the WebSocket feed (used by dashboard_watch)."""
    svc = request.app.state.services
    broadcaster = svc.broadcaster
    q = await broadcaster.subscribe()
    seed = broadcaster.seed_messages(svc.registry.list_devices(), svc.latest.get(), since=since)

    async def gen():
        try:
            for msg in seed:
                yield f"data: {msg}\n\n".encode()
            while not await request.is_disconnected():
                msg = await q.get()
                if msg is None:  # shutdown
                    break
                yield f"data: {msg}\n\n".encode()
        finally:
            await broadcaster.unsubscribe(q)

    return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})
