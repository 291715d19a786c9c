"""
dashboard_watch.py
------------------
Terminal dashboard client for a running ScanHub server.

Reads the Server-Sent Events feed at /api/esp32/stream, keeps the device
list current, and runs scan events through ScanReassembler so a physical
scan is shown once (complete, debounced) no matter how many events carried
it. Reconnects with backoff and resumes from the last seen sequence number.

Usage:
    python -m scanhub.dashboard_watch --url http://127.0.0.1:3001
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Iterable, Iterator, Optional

import httpx

from .broadcaster import (
    EVENT_BARCODE_SCAN,
    EVENT_DEVICE_CONNECTED,
    EVENT_DEVICES_UPDATE,
    EVENT_SCAN_PROCESSED,
)
from .config_loader import CONFIG, get_log_level, get_reassembler_cfg, get_server_bind, load_config
from .reassembler import ScanReassembler

log = logging.getLogger("scanhub.watch")

SCAN_EVENTS = (EVENT_BARCODE_SCAN, EVENT_SCAN_PROCESSED)


def iter_sse_envelopes(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """
    Turn raw SSE lines into decoded envelopes. Multi-line `data:` fields are
    joined; comments and unknown fields are ignored; undecodable frames are
    logged and skipped.
    """
    buf = []
    for line in lines:
        if line == "":
            if buf:
                raw = "\n".join(buf)
                buf = []
                try:
                    env = json.loads(raw)
                except ValueError:
                    log.warning("sse_bad_frame %.80s", raw)
                    continue
                if isinstance(env, dict) and "event" in env:
                    yield env
            continue
        if line.startswith("data:"):
            buf.append(line[5:].lstrip())


class DashboardState:
    """What the dashboard would render: devices, latest complete scan, feed position."""

    def __init__(self, reassembler: ScanReassembler):
        self.reassembler = reassembler
        self.devices: Dict[str, Dict[str, Any]] = {}
        self.last_seq: Optional[int] = None

    @property
    def latest_scan(self) -> Optional[Dict[str, Any]]:
        return self.reassembler.latest_scan

    def handle(self, env: Dict[str, Any]) -> None:
        event = env.get("event")
        data = env.get("data")
        seq = env.get("seq")
        if isinstance(seq, int):
            self.last_seq = seq

        if event == EVENT_DEVICES_UPDATE and isinstance(data, list):
            self.devices = {d["deviceId"]: d for d in data if isinstance(d, dict) and "deviceId" in d}
        elif event == EVENT_DEVICE_CONNECTED and isinstance(data, dict):
            self.devices[data.get("deviceId")] = data
            log.info("device_connected id=%s name=%s", data.get("deviceId"), data.get("deviceName"))
        elif event in SCAN_EVENTS:
            self.reassembler.feed(data, event)
        else:
            log.debug("ignored_event %s", event)


def _print_scan(scan: Dict[str, Any]) -> None:
    ai = scan.get("aiAnalysis") or {}
    log.info(
        "SCAN %s | %s | %s | %s%s",
        scan.get("deviceName"),
        scan.get("barcodeData"),
        ai.get("title") or "-",
        ai.get("category") or "-",
        " (fallback)" if ai.get("fallback") else "",
    )


async def watch(base_url: str, state: DashboardState, stop_evt: asyncio.Event, *,
                timeout_s: float = 10.0,
                transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """
    Follow the feed until stop_evt is set. Backoff doubles on each failure
    (cap 5s) and resets once frames flow again.
    """
    backoff = 0.5
    timeout = httpx.Timeout(timeout_s, read=None)
    async with httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout,
                                 transport=transport) as client:
        while not stop_evt.is_set():
            buf = []
            params = {"since": state.last_seq} if state.last_seq is not None else None
            try:
                async with client.stream("GET", "/api/esp32/stream", params=params) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        buf.append(line)
                        if line:
                            continue
                        for env in iter_sse_envelopes(buf):
                            state.handle(env)
                        buf = []
                        backoff = 0.5
                        if stop_evt.is_set():
                            break
                    else:
                        log.info("stream_closed_by_server last_seq=%s", state.last_seq)
            except httpx.HTTPError as e:
                log.warning("stream_error err=%s retry_in=%.1fs", e, backoff)

            if stop_evt.is_set():
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_evt.wait(), timeout=backoff)
            backoff = min(backoff * 2, 5.0)


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def _parse_args() -> argparse.Namespace:
    host, port = get_server_bind()
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    ap = argparse.ArgumentParser(description="ScanHub live scan watcher")
    ap.add_argument("--url", default=f"http://{host}:{port}", help="ScanHub base URL")
    ap.add_argument("--since", type=int, default=None, help="Replay events after this sequence number")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    return ap.parse_args()


async def _amain() -> None:
    args = _parse_args()
    cfg = load_config(args.config) if args.config else CONFIG

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO", cfg), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ra = get_reassembler_cfg(cfg)
    reassembler = ScanReassembler(
        _print_scan,
        settle_ms=ra["settle_ms"],
        cooldown_ms=ra["cooldown_ms"],
        device_name_markers=ra["device_name_markers"],
        sources=ra["sources"],
    )
    state = DashboardState(reassembler)
    state.last_seq = args.since

    stop_evt = asyncio.Event()
    try:
        await watch(args.url, state, stop_evt)
    finally:
        stop_evt.set()
        reassembler.reset()


def main() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())


if __name__ == "__main__":
    main()
