from __future__ import annotations

"""
ScanHub - scanhub/server.py
---------------------------
FastAPI application factory for the scan ingestion service.

What lives here
1) Service wiring
   - One DeviceRegistry, LatestScanSlot, AiEnrichmentGateway, ScanStore,
     SavedScanStore, RealtimeBroadcaster and ScanPipeline per app instance,
     hung on app.state.services. Routers reach them through the request.

2) Error envelope
   - Every HTTP error renders as {"success": false, "error": <detail>}.
   - Malformed bodies are 400, not FastAPI's default 422.
   - Unhandled errors are 500 "Internal server error"; `details` only in dev mode.

3) Probes
   - /healthz: liveness (no DB access).
   - /readyz: readiness (touches SQLite to confirm schema presence).
   - /api/health: alias used by the dashboard.

4) DB path
   - Sourced via config_loader.get_db_path(), which defaults to db/scanhub.sqlite
     unless overridden in config/config.yaml or SCANHUB_DB_PATH.

Run:
    scanhub                     (console script, binds app.server.host/port)
    uvicorn scanhub.server:create_app --factory --port 3001
"""

import datetime
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
import httpx
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .broadcaster import RealtimeBroadcaster
from .config_loader import (
    CONFIG,
    get_ai_cfg,
    get_db_path,
    get_devices_cfg,
    get_log_level,
    get_realtime_cfg,
    get_saved_scans_cfg,
    get_server_bind,
    is_dev_mode,
)
from .db_schema import ensure_schema, schema_version
from .device_registry import DeviceRegistry, LatestScanSlot
from .enrichment import AiEnrichmentGateway
from .esp32_api import router as esp32_router
from .persistence import SavedScanStore, ScanStore
from .scan_pipeline import ScanPipeline
from .scans_api import router as scans_router

log = logging.getLogger("scanhub")
log.setLevel(get_log_level())

VERSION = "1.0.0"


@dataclass
class Services:
    db_path: Path
    registry: DeviceRegistry
    latest: LatestScanSlot
    gateway: AiEnrichmentGateway
    scans: ScanStore
    saved_scans: SavedScanStore
    broadcaster: RealtimeBroadcaster
    pipeline: ScanPipeline
    allowed_sources: List[str] = field(default_factory=lambda: ["ESP32"])
    dev_mode: bool = False


def build_services(cfg: Optional[Dict[str, Any]] = None, *,
                   ai_transport: Optional[httpx.AsyncBaseTransport] = None) -> Services:
    cfg = CONFIG if cfg is None else cfg
    db_path = get_db_path(cfg)
    ai = get_ai_cfg(cfg)
    dev = get_devices_cfg(cfg)
    saved = get_saved_scans_cfg(cfg)
    rt = get_realtime_cfg(cfg)

    registry = DeviceRegistry(
        stale_after_s=dev["stale_after_s"],
        capability_marker=dev["capability_marker"],
    )
    latest = LatestScanSlot()
    gateway = AiEnrichmentGateway(
        ai["server_url"],
        timeout_s=ai["timeout_s"],
        policy=ai["policy"],
        transport=ai_transport,
    )
    scans = ScanStore(db_path)
    saved_scans = SavedScanStore(db_path, window_s=saved["duplicate_window_s"])
    broadcaster = RealtimeBroadcaster(
        replay_buffer_size=rt["replay_buffer_size"],
        subscriber_queue_size=rt["subscriber_queue_size"],
    )
    pipeline = ScanPipeline(registry, gateway, scans, latest, broadcaster)
    return Services(
        db_path=db_path,
        registry=registry,
        latest=latest,
        gateway=gateway,
        scans=scans,
        saved_scans=saved_scans,
        broadcaster=broadcaster,
        pipeline=pipeline,
        allowed_sources=saved["allowed_sources"],
        dev_mode=is_dev_mode(cfg),
    )


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc)\
        .isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app(cfg: Optional[Dict[str, Any]] = None, *,
               ai_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    cfg = CONFIG if cfg is None else cfg
    services = build_services(cfg, ai_transport=ai_transport)

    recreate = bool((cfg.get("app", {}).get("persistence", {}) or {}).get("recreate_on_boot", False))
    ensure_schema(services.db_path, recreate=recreate)

    app = FastAPI(title="ScanHub", version=VERSION)
    app.state.services = services

    app.include_router(esp32_router)
    app.include_router(scans_router)

    # ------------------------------------------------------------
    # CORS: permissive for development. Tighten for production.
    # ------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------
    # Error envelope
    # ------------------------------------------------------------
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"success": False, "error": exc.detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body') or 'body'}: {e.get('msg')}"
            for e in exc.errors()
        )
        return JSONResponse(
            {"success": False, "error": f"Invalid request: {problems}"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        log.exception("unhandled_error path=%s", request.url.path)
        body: Dict[str, Any] = {"success": False, "error": "Internal server error"}
        if services.dev_mode:
            body["details"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(body, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    # ------------------------------------------------------------
    # Index, stats, probes
    # ------------------------------------------------------------
    @app.get("/")
    async def index():
        return {
            "message": "ScanHub API Server",
            "version": VERSION,
            "endpoints": {
                "health": "/api/health",
                "esp32Register": "/api/esp32/register",
                "esp32Ping": "/api/esp32/ping/{deviceId}",
                "esp32Scan": "/api/esp32/scan",
                "devices": "/api/esp32/devices",
                "latestScan": "/api/esp32/latest-scan",
                "saveScan": "/api/save-scan",
                "savedScans": "/api/saved-scans",
                "websocket": "/ws",
                "stream": "/api/esp32/stream",
            },
        }

    @app.get("/api/health")
    async def api_health():
        return {"status": "ok", "timestamp": _now_iso()}

    @app.get("/api/dashboard/stats")
    async def dashboard_stats():
        svc = app.state.services
        devices = svc.registry.list_devices()
        connected = sum(1 for d in devices if d["status"] == "connected")
        return {
            "success": True,
            "data": {
                "devices": len(devices),
                "connectedDevices": connected,
                "scans": await svc.scans.count(),
                "savedScans": await svc.saved_scans.count(),
                "realtimeClients": svc.broadcaster.client_count,
                "scanner_status": "connected" if connected > 0 else "offline",
                "pipeline": {
                    "accepted": svc.pipeline.scans_accepted,
                    "rejected": svc.pipeline.scans_rejected,
                    "persistFailures": svc.pipeline.persist_failures,
                    "aiCalls": svc.gateway.calls,
                    "aiFallbacks": svc.gateway.fallbacks,
                },
            },
        }

    @app.get("/healthz")
    async def healthz():
        """
        Lightweight liveness probe. Returns 200 if the app is up and able to serve.
        Does not touch the database.
        """
        return {"status": "ok", "service": "scanhub"}

    @app.get("/readyz")
    async def readyz():
        """
        Readiness probe. Verifies DB is reachable and schema is present.
        Returns 200 with basic info if good; 503 if DB check fails.
        """
        db_path = app.state.services.db_path
        try:
            async with aiosqlite.connect(db_path) as db:
                # succeeds only if both tables exist
                await db.execute("SELECT 1 FROM scans LIMIT 1")
                await db.execute("SELECT 1 FROM saved_scans LIMIT 1")
            return {"status": "ok", "db_path": str(db_path), "schema_version": schema_version(db_path)}
        except Exception as e:
            return Response(
                content='{"status":"degraded","error":"%s"}' % type(e).__name__,
                media_type="application/json",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------
    @app.on_event("startup")
    async def announce_db_path() -> None:
        """Emit the configured database path once logging is fully initialized."""
        resolved = Path(app.state.services.db_path).resolve()
        message = f"db_path={resolved} ai_url={app.state.services.gateway.server_url}"
        log.info(message)
        logging.getLogger("uvicorn.error").info(message)

    @app.on_event("shutdown")
    async def stop_broadcaster() -> None:
        await app.state.services.broadcaster.shutdown()
        log.info("shutdown complete")

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=get_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host, port = get_server_bind()
    uvicorn.run(create_app(), host=host, port=port, log_level=get_log_level().lower())


if __name__ == "__main__":
    main()
