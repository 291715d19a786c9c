"""
scanhub/broadcaster.py
----------------------
Realtime fan-out of scan-lifecycle events to dashboards.

Two kinds of listeners share one feed:
  - WebSocket clients (the dashboard SPA)
  - asyncio.Queue subscribers (the SSE mirror at /api/esp32/stream)

Every broadcast gets a sequence number and lands in a bounded ring so a
client reconnecting with `since=<seq>` can catch up on what it missed.
Without `since`, a new client is seeded with the device list and the latest
scan only. Delivery is fire-and-forget: a dead socket is dropped, a full
subscriber queue loses its oldest event.

Wire envelope (text frame / SSE data):
    {"event": "<name>", "seq": <int|null>, "data": <payload>}
The payload is serialised once per broadcast, so two events emitted from the
same payload carry byte-identical data.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket, WebSocketDisconnect

log = logging.getLogger("scanhub.realtime")

EVENT_DEVICES_UPDATE = "esp32_devices_update"
EVENT_DEVICE_CONNECTED = "esp32_device_connected"
EVENT_BARCODE_SCAN = "esp32_barcode_scan"
EVENT_SCAN_PROCESSED = "esp32_scan_processed"


def dump_payload(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), default=str)


def envelope(event: str, seq: Optional[int], data_json: str) -> str:
    seq_txt = "null" if seq is None else str(int(seq))
    return f'{{"event":{json.dumps(event)},"seq":{seq_txt},"data":{data_json}}}'


class RealtimeBroadcaster:
    def __init__(self, *, replay_buffer_size: int = 200, subscriber_queue_size: int = 256):
        self._clients: Set[WebSocket] = set()
        self._subs: Set[asyncio.Queue] = set()
        self._lock = asyncio.Lock()
        self._ring: Deque[Tuple[int, str, str]] = deque(maxlen=max(1, int(replay_buffer_size)))
        self._queue_size = int(subscriber_queue_size)
        self._seq = 0

    # ---------- introspection ----------
    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def client_count(self) -> int:
        return len(self._clients) + len(self._subs)

    def replay_since(self, since: int) -> List[str]:
        """Envelopes with seq > since, oldest first."""
        return [envelope(ev, seq, data) for (seq, ev, data) in list(self._ring) if seq > since]

    def seed_messages(self, devices: Iterable[dict], latest_scan: Optional[dict],
                      since: Optional[int] = None) -> List[str]:
        """What a newly connected client gets before live events."""
        if since is not None:
            return self.replay_since(since)
        out = [envelope(EVENT_DEVICES_UPDATE, None, dump_payload(list(devices)))]
        if latest_scan is not None:
            out.append(envelope(EVENT_BARCODE_SCAN, None, dump_payload(latest_scan)))
        return out

    # ---------- WebSocket clients ----------
    async def connect(self, ws: WebSocket,
                      seed: Iterable[str] | Callable[[], Iterable[str]] = ()) -> None:
        """
        Accept a client, send it the seed, then add it to the fan-out. Both
        happen under the client lock, so a concurrent broadcast either lands
        in the seed (pass a callable to build it inside the lock) or is sent
        to this client after the seed.
        """
        await ws.accept()
        async with self._lock:
            for msg in (seed() if callable(seed) else seed):
                await ws.send_text(msg)
            self._clients.add(ws)
        log.info("ws_connected clients=%d", len(self._clients))

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)
        log.info("ws_disconnected clients=%d", len(self._clients))

    # ---------- queue subscribers (SSE) ----------
    async def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subs.add(q)
        return q

    async def unsubscribe(self, q: asyncio.Queue) -> None:
        async with self._lock:
            self._subs.discard(q)

    # ---------- publish ----------
    async def emit(self, event: str, data: Any) -> int:
        return await self.emit_many([event], data)

    async def emit_many(self, events: Iterable[str], data: Any) -> int:
        """
        Broadcast one payload under several event names. The payload JSON is
        built once and reused for each event. Returns the last seq assigned.
        """
        events = list(events)
        data_json = dump_payload(data)
        messages = []
        for event in events:
            self._seq += 1
            self._ring.append((self._seq, event, data_json))
            messages.append(envelope(event, self._seq, data_json))

        async with self._lock:
            clients = list(self._clients)
            subs = list(self._subs)

        dead: List[WebSocket] = []
        for ws in clients:
            try:
                for msg in messages:
                    await ws.send_text(msg)
            except WebSocketDisconnect:
                dead.append(ws)
            except Exception as e:
                log.warning("ws_send_failed err=%s", e)
                dead.append(ws)

        for q in subs:
            for msg in messages:
                try:
                    q.put_nowait(msg)
                except asyncio.QueueFull:
                    # lossy: drop oldest, keep newest
                    try:
                        q.get_nowait()
                        q.put_nowait(msg)
                    except (asyncio.QueueEmpty, asyncio.QueueFull):
                        pass

        if dead:
            async with self._lock:
                for ws in dead:
                    self._clients.discard(ws)

        log.debug("broadcast events=%s ws=%d subs=%d", list(events), len(clients), len(subs))
        return self._seq

    async def shutdown(self) -> None:
        """Wake SSE generators so they can exit; close sockets politely."""
        async with self._lock:
            clients = list(self._clients)
            subs = list(self._subs)
            self._clients.clear()
        for q in subs:
            try:
                q.put_nowait(None)
            except asyncio.QueueFull:
                pass
        for ws in clients:
            try:
                await ws.close()
            except Exception:
                log.debug("ws_close_failed", exc_info=True)
