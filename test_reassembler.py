"""
Client scan reassembler.

Verifies:
1. two partial events within the settle window -> exactly one promotion with merged fields
2. a later aiAnalysis of null does not erase a buffered analysis
3. barcode_scan + scan_processed for one scan -> one promotion
4. events during cooldown are promoted only after the latch clears
5. non-scanner events are ignored; incomplete buffers never promote
6. "Robridge" names count as scanners by default, and the config defaults agree
"""

from scanhub.config_loader import get_log_level, get_reassembler_cfg
from scanhub.reassembler import DEFAULT_NAME_MARKERS, DEFAULT_SOURCES, ReassemblerState, ScanReassembler


class FakeHandle:
    def __init__(self, due, cb):
        self.due = due
        self.cb = cb
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Deterministic stand-in for loop.call_later."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay_s, cb):
        h = FakeHandle(self.now + delay_s, cb)
        self.handles.append(h)
        return h

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [h for h in self.handles if not h.cancelled and h.due <= target]
            if not due:
                break
            h = min(due, key=lambda x: x.due)
            self.handles.remove(h)
            self.now = h.due
            h.cb()
        self.now = target

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]


def _make():
    sched = FakeScheduler()
    promoted = []
    ra = ScanReassembler(
        promoted.append,
        settle_ms=500,
        cooldown_ms=2000,
        call_later=sched.call_later,
        clock=lambda: 1_700_000_000.0 + sched.now,
    )
    return ra, sched, promoted


SCAN = {
    "id": "scan_1_dev-1",
    "deviceId": "dev-1",
    "deviceName": "Robridge Scanner 1",
    "barcodeData": "8901030865278",
    "scanType": "EAN13",
    "source": "esp32",
    "aiAnalysis": {"title": "Maggi", "category": "Food"},
}


def test_partial_events_merge_into_one_promotion():
    ra, sched, promoted = _make()
    assert ra.feed({"deviceName": "Robridge Scanner 1", "barcodeData": "123"}, "esp32_barcode_scan")
    sched.advance(0.2)
    assert ra.feed({"deviceName": "Robridge Scanner 1", "scanType": "QR"}, "esp32_scan_processed")
    assert ra.state is ReassemblerState.BUFFERING
    assert len(sched.pending) == 1, "settle timer must be rescheduled, not stacked"

    sched.advance(0.49)
    assert promoted == [], "promotion waits for a quiet period after the last event"
    sched.advance(0.02)

    assert len(promoted) == 1
    scan = promoted[0]
    assert scan["barcodeData"] == "123"
    assert scan["scanType"] == "QR"
    assert scan["source"] == "ESP32"
    assert ra.latest_scan is scan
    assert ra.state is ReassemblerState.COOLDOWN


def test_null_analysis_keeps_buffered_one():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    ra.feed({**SCAN, "aiAnalysis": None}, "esp32_scan_processed")
    sched.advance(0.6)
    assert promoted[0]["aiAnalysis"] == {"title": "Maggi", "category": "Food"}


def test_missing_analysis_keeps_buffered_one():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    partial = {k: v for k, v in SCAN.items() if k != "aiAnalysis"}
    ra.feed(partial, "esp32_scan_processed")
    sched.advance(0.6)
    assert promoted[0]["aiAnalysis"]["title"] == "Maggi"


def test_duplicate_events_for_one_scan_promote_once():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    ra.feed(dict(SCAN), "esp32_scan_processed")
    sched.advance(5.0)
    assert len(promoted) == 1
    assert ra.state is ReassemblerState.IDLE


def test_redelivery_after_cooldown_is_dropped():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    sched.advance(0.6)
    # seed replay of the same record while latched
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    sched.advance(5.0)
    assert len(promoted) == 1
    assert ra.buffer == {}
    assert ra.state is ReassemblerState.IDLE


def test_new_scan_during_cooldown_waits_for_latch():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    sched.advance(0.6)
    assert len(promoted) == 1

    nxt = {**SCAN, "id": "scan_2_dev-1", "barcodeData": "5449000000996", "aiAnalysis": None}
    ra.feed(nxt, "esp32_barcode_scan")
    sched.advance(1.0)
    assert len(promoted) == 1, "latched: nothing promotes during cooldown"
    assert ra.state is ReassemblerState.COOLDOWN

    sched.advance(1.0)   # cooldown ends, next buffer gets its settle window
    assert ra.state is ReassemblerState.BUFFERING
    sched.advance(0.5)
    assert len(promoted) == 2
    assert promoted[1]["barcodeData"] == "5449000000996"
    assert promoted[1]["aiAnalysis"] is None, "analysis from the previous scan must not leak"


def test_non_scanner_events_ignored():
    ra, sched, promoted = _make()
    assert not ra.feed({"deviceName": "Web Camera", "barcodeData": "1", "scanType": "QR", "source": "web"})
    assert not ra.feed(None)
    assert not ra.feed(["not", "a", "dict"])
    sched.advance(1.0)
    assert promoted == []
    assert ra.state is ReassemblerState.IDLE


def test_robridge_device_name_is_a_scanner():
    ra, sched, promoted = _make()
    assert ra.feed({"deviceName": "Robridge Unit 7", "barcodeData": "1", "scanType": "QR"})
    sched.advance(0.6)
    assert len(promoted) == 1


def test_config_defaults_match_reassembler_defaults():
    ra = get_reassembler_cfg({})
    assert tuple(ra["device_name_markers"]) == DEFAULT_NAME_MARKERS
    assert tuple(ra["sources"]) == DEFAULT_SOURCES
    assert ra["settle_ms"] == 500 and ra["cooldown_ms"] == 2000


def test_log_level_reads_given_config():
    assert get_log_level("INFO", {"log": {"level": "debug"}}) == "DEBUG"
    assert get_log_level("WARNING", {}) == "WARNING"


def test_source_tag_is_enough():
    ra, sched, promoted = _make()
    assert ra.feed({"deviceName": "Bench Unit", "barcodeData": "1", "scanType": "QR", "source": "ESP32_BASIC"})
    sched.advance(0.6)
    assert len(promoted) == 1


def test_incomplete_buffer_never_promotes():
    ra, sched, promoted = _make()
    ra.feed({"deviceName": "ESP32-abc", "barcodeData": "   "}, "esp32_barcode_scan")
    ra.feed({"deviceName": "ESP32-abc"}, "esp32_barcode_scan")
    sched.advance(10.0)
    assert promoted == []
    assert ra.state is ReassemblerState.BUFFERING

    ra.feed({"deviceName": "ESP32-abc", "barcodeData": "42", "scanType": "QR"}, "esp32_barcode_scan")
    sched.advance(0.6)
    assert promoted[0]["barcodeData"] == "42"


def test_reset_unlatches():
    ra, sched, promoted = _make()
    ra.feed(dict(SCAN), "esp32_barcode_scan")
    sched.advance(0.6)
    ra.reset()
    assert ra.state is ReassemblerState.IDLE
    assert sched.pending == []
    ra.feed({**SCAN, "id": "scan_9"}, "esp32_barcode_scan")
    sched.advance(0.6)
    assert len(promoted) == 2
