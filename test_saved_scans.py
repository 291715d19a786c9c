"""
Persistence: scan history and the saved-scan duplicate window.

Verifies:
1. same barcode saved twice within 5 minutes -> duplicate with lastSaved
   (the window is strict: exactly 300 s old is already outside it)
2. after 5 min 1 s -> saved again
3. concurrent saves of one barcode store exactly one row, and no per-barcode
   lock outlives its saves
4. scan history insert / list / lookup / stats / delete
"""

import asyncio
from datetime import datetime, timedelta, timezone

from scanhub.db_schema import ensure_schema, schema_version, LOCKED_USER_VERSION
from scanhub.persistence import SavedScanStore, ScanStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _store(tmp_path, clock):
    db = tmp_path / "scans.sqlite"
    ensure_schema(db)
    return SavedScanStore(db, window_s=300, clock=clock)


def _save(store, barcode="8901030865278", **kw):
    return asyncio.run(store.save(barcode_data=barcode, barcode_type="EAN13", source="ESP32", **kw))


def test_duplicate_within_window(tmp_path):
    clock = FakeClock()
    store = _store(tmp_path, clock)

    first = _save(store, product_name="Maggi")
    assert first.saved and first.saved_id is not None

    clock.now += timedelta(minutes=4, seconds=30)
    second = _save(store)
    assert not second.saved
    assert second.duplicate
    assert second.minutes_ago == 4.5
    assert second.last_saved.startswith("2025-03-01T12:00:00")
    assert asyncio.run(store.count()) == 1


def test_saved_again_after_window(tmp_path):
    clock = FakeClock()
    store = _store(tmp_path, clock)
    assert _save(store).saved

    clock.now += timedelta(minutes=4, seconds=59)
    assert _save(store).duplicate

    clock.now += timedelta(seconds=2)
    again = _save(store)
    assert again.saved, "5 min 1 s after the last save must be accepted"
    assert asyncio.run(store.count()) == 2


def test_window_is_per_barcode(tmp_path):
    store = _store(tmp_path, FakeClock())
    assert _save(store, "111").saved
    assert _save(store, "222").saved
    assert _save(store, "111").duplicate


def test_concurrent_saves_store_one_row(tmp_path):
    store = _store(tmp_path, FakeClock())

    async def burst():
        return await asyncio.gather(*[
            store.save(barcode_data="999", barcode_type="qr", source="esp32") for _ in range(5)
        ])

    results = asyncio.run(burst())
    assert sum(1 for r in results if r.saved) == 1
    assert sum(1 for r in results if r.duplicate) == 4
    assert asyncio.run(store.count()) == 1


def test_barcode_locks_released_after_saves(tmp_path):
    store = _store(tmp_path, FakeClock())

    async def many():
        await asyncio.gather(*[
            store.save(barcode_data=f"code-{i % 10}", barcode_type="qr", source="esp32") for i in range(50)
        ])

    asyncio.run(many())
    for i in range(10, 50):
        assert _save(store, f"code-{i}").saved
    assert store._locks == {}, "no lock kept for idle barcodes"
    assert asyncio.run(store.count()) == 50


def test_list_delete_clear(tmp_path):
    clock = FakeClock()
    store = _store(tmp_path, clock)
    a = _save(store, "A", metadata={"deviceName": "Scanner 1"})
    clock.now += timedelta(seconds=1)
    _save(store, "B")

    rows = asyncio.run(store.list_saved())
    assert [r["barcode_data"] for r in rows] == ["B", "A"], "newest first"
    assert rows[1]["metadata"] == {"deviceName": "Scanner 1"}

    assert asyncio.run(store.delete(a.saved_id)) is True
    assert asyncio.run(store.delete(a.saved_id)) is False
    assert asyncio.run(store.clear()) == 1
    assert asyncio.run(store.list_saved()) == []


def test_scan_history(tmp_path):
    db = tmp_path / "scans.sqlite"
    ensure_schema(db)
    assert schema_version(db) == LOCKED_USER_VERSION
    scans = ScanStore(db)

    r1 = asyncio.run(scans.insert_scan(
        barcode_data="8901030865278", barcode_type="EAN13", product_name="Maggi",
        category="Food", price=1.5, metadata={"productDetails": "Instant noodles"},
    ))
    assert r1["barcodeId"].startswith("SCAN_")
    asyncio.run(scans.insert_scan(barcode_data="QR-1", source="mobile"))

    rows = asyncio.run(scans.list_scans())
    assert len(rows) == 2
    assert len(asyncio.run(scans.list_scans(source="mobile"))) == 1

    hit = asyncio.run(scans.lookup("8901030865278"))
    assert hit["product_name"] == "Maggi"
    assert hit["metadata"]["productDetails"] == "Instant noodles"
    assert asyncio.run(scans.lookup("nope")) is None

    stats = asyncio.run(scans.stats())
    assert stats["total"] == 2
    assert stats["bySource"] == {"esp32": 1, "mobile": 1}
    assert stats["byType"] == {"EAN13": 1, "qr": 1}

    assert asyncio.run(scans.delete_scan(r1["id"])) is True
    assert asyncio.run(scans.count()) == 1


def test_recreate_drops_rows(tmp_path):
    db = tmp_path / "scans.sqlite"
    ensure_schema(db)
    asyncio.run(ScanStore(db).insert_scan(barcode_data="X"))
    ensure_schema(db, recreate=True)
    assert asyncio.run(ScanStore(db).count()) == 0
