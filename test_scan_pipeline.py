"""
Scan pipeline and realtime broadcaster, without HTTP.

Verifies:
1. a failed insert is logged and swallowed; the scan is still cached and broadcast
2. rejected scans touch nothing (no counter bump, no broadcast)
3. subscriber queues are lossy (oldest dropped) and the replay ring is bounded
4. a client connecting during a broadcast gets it exactly once, after its seed
"""

import asyncio
import json
import logging
import sqlite3

import httpx

from scanhub.broadcaster import RealtimeBroadcaster, envelope
from scanhub.device_registry import DeviceRegistry, LatestScanSlot
from scanhub.enrichment import AiEnrichmentGateway
from scanhub.scan_pipeline import REASON_MISSING_BARCODE, REASON_UNKNOWN_DEVICE, ScanPipeline


class BrokenStore:
    async def insert_scan(self, **kw):
        raise sqlite3.OperationalError("disk I/O error")


class MemoryStore:
    def __init__(self):
        self.rows = []

    async def insert_scan(self, **kw):
        self.rows.append(kw)
        return {"id": len(self.rows), "barcodeId": f"SCAN_{len(self.rows)}"}


def _pipeline(store):
    registry = DeviceRegistry()
    registry.register_device("dev-1", "Robridge Scanner 1")
    gateway = AiEnrichmentGateway(
        "http://ai.test",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"title": "Pepsi", "category": "Drinks"})),
    )
    broadcaster = RealtimeBroadcaster(replay_buffer_size=10, subscriber_queue_size=10)
    latest = LatestScanSlot()
    return ScanPipeline(registry, gateway, store, latest, broadcaster, now_ms=lambda: 1700000000000)


def test_persist_failure_still_broadcasts(caplog):
    pipe = _pipeline(BrokenStore())

    async def run():
        q = await pipe.broadcaster.subscribe()
        res = await pipe.ingest("dev-1", {"barcodeData": "012345", "scanType": "QR"})
        return res, [q.get_nowait(), q.get_nowait()]

    with caplog.at_level(logging.ERROR, logger="scanhub.pipeline"):
        res, frames = asyncio.run(run())

    assert res.accepted and not res.persisted
    assert pipe.persist_failures == 1
    assert "scan_persist_failed" in caplog.text
    assert pipe.latest.get()["id"] == "scan_1700000000000_dev-1"
    assert [json.loads(f)["event"] for f in frames] == ["esp32_barcode_scan", "esp32_scan_processed"]


def test_record_shape_and_persisted_fields():
    store = MemoryStore()
    pipe = _pipeline(store)
    res = asyncio.run(pipe.ingest("dev-1", {"barcodeData": " 012345 ", "timestamp": 1699999999000}))

    scan = res.scan
    assert scan["barcodeData"] == " 012345 ", "barcode is stored as sent"
    assert scan["scanType"] == "unknown"
    assert scan["timestamp"] == 1699999999000
    assert scan["source"] == "esp32"
    assert scan["imageData"] is None
    assert scan["aiAnalysis"]["title"] == "Pepsi"

    row = store.rows[0]
    assert row["product_name"] == "Pepsi"
    assert row["category"] == "Drinks"
    assert row["metadata"]["aiAnalysis"] == scan["aiAnalysis"]
    assert res.db == {"id": 1, "barcodeId": "SCAN_1"}
    assert pipe.registry.get("dev-1")["totalScans"] == 1


def test_rejections_have_no_side_effects():
    store = MemoryStore()
    pipe = _pipeline(store)

    unknown = asyncio.run(pipe.ingest("ghost", {"barcodeData": "1"}))
    blank = asyncio.run(pipe.ingest("dev-1", {"barcodeData": "   "}))
    missing = asyncio.run(pipe.ingest("dev-1", {}))

    assert unknown.reason == REASON_UNKNOWN_DEVICE
    assert blank.reason == REASON_MISSING_BARCODE
    assert missing.reason == REASON_MISSING_BARCODE
    assert store.rows == []
    assert pipe.broadcaster.last_seq == 0
    assert pipe.latest.get() is None
    assert pipe.registry.get("dev-1")["totalScans"] == 0
    assert pipe.scans_rejected == 3


def test_subscriber_queue_drops_oldest():
    b = RealtimeBroadcaster(replay_buffer_size=100, subscriber_queue_size=2)

    async def run():
        q = await b.subscribe()
        for i in range(4):
            await b.emit("esp32_barcode_scan", {"n": i})
        return [json.loads(q.get_nowait())["data"]["n"] for _ in range(q.qsize())]

    assert asyncio.run(run()) == [2, 3]


def test_replay_ring_is_bounded():
    b = RealtimeBroadcaster(replay_buffer_size=3)

    async def run():
        for i in range(5):
            await b.emit("esp32_barcode_scan", {"n": i})

    asyncio.run(run())
    assert b.last_seq == 5
    assert [json.loads(m)["seq"] for m in b.replay_since(0)] == [3, 4, 5]
    assert b.replay_since(5) == []


def test_envelope_and_shutdown():
    assert envelope("x", None, "[]") == '{"event":"x","seq":null,"data":[]}'
    b = RealtimeBroadcaster()

    async def run():
        q = await b.subscribe()
        await b.shutdown()
        return q.get_nowait()

    assert asyncio.run(run()) is None


class FakeSocket:
    """Records frames; runs `on_accept` / `on_send` once, mid-handshake."""

    def __init__(self, on_accept=None, on_send=None):
        self.sent = []
        self.on_accept = on_accept
        self.on_send = on_send

    async def accept(self):
        if self.on_accept:
            self.on_accept()
            await asyncio.sleep(0)

    async def send_text(self, msg):
        self.sent.append(msg)
        if self.on_send:
            hook, self.on_send = self.on_send, None
            hook()


def test_connect_does_not_miss_concurrent_broadcasts():
    b = RealtimeBroadcaster()

    async def run():
        tasks = []

        def emit(n):
            return lambda: tasks.append(asyncio.ensure_future(b.emit("esp32_barcode_scan", {"n": n})))

        ws = FakeSocket(on_accept=emit(1), on_send=emit(2))
        await b.connect(ws, lambda: b.replay_since(0))
        await asyncio.gather(*tasks)
        return ws.sent

    frames = [json.loads(m) for m in asyncio.run(run())]
    # 1 went out while accepting (seed replay), 2 while the seed was being sent
    assert [f["data"]["n"] for f in frames] == [1, 2]
    assert [f["seq"] for f in frames] == [1, 2]
