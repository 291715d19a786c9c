"""
scanhub/persistence.py
----------------------
aiosqlite-backed stores for scan history and user-confirmed saves.

ScanStore       append-only inserts of enriched scans + history queries.
SavedScanStore  deduplicating insert: a barcode saved less than
                `window_s` ago is rejected with a duplicate result that
                carries the previous saved_at. Inserts for the same barcode
                are serialised through a per-barcode asyncio.Lock so two
                concurrent saves cannot both pass the check.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiosqlite

log = logging.getLogger("scanhub.db")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(val: str) -> datetime:
    """Parse our stored timestamps (and SQLite CURRENT_TIMESTAMP) as UTC."""
    s = str(val).strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _json_or_none(val: Any) -> Optional[str]:
    if val is None:
        return None
    if isinstance(val, str):
        return val
    return json.dumps(val)


def _row_dict(row: aiosqlite.Row) -> Dict[str, Any]:
    out = dict(row)
    meta = out.get("metadata")
    if isinstance(meta, str):
        try:
            out["metadata"] = json.loads(meta)
        except ValueError:
            pass
    return out


# ---------------------------------------------------------------------------
# Scan history
# ---------------------------------------------------------------------------

class ScanStore:
    def __init__(self, db_path: str | Path, *, clock: Callable[[], datetime] = utc_now):
        self.db_path = str(db_path)
        self._clock = clock

    @staticmethod
    def new_barcode_id() -> str:
        rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f"SCAN_{int(time.time() * 1000)}_{rand}"

    async def insert_scan(
        self,
        *,
        barcode_data: str,
        barcode_type: str = "qr",
        source: str = "esp32",
        product_name: str = "Unknown Product",
        product_id: Optional[str] = None,
        price: float = 0,
        location: Tuple[float, float, float] = (0, 0, 0),
        category: str = "Unknown",
        metadata: Any = None,
    ) -> Dict[str, Any]:
        """Append one row; returns {"id", "barcodeId"}. Errors propagate to the caller."""
        barcode_id = self.new_barcode_id()
        lx, ly, lz = location
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO scans (
                    barcode_id, barcode_data, barcode_type, source, product_name,
                    product_id, price, location_x, location_y, location_z,
                    category, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    barcode_id, barcode_data, barcode_type, source, product_name,
                    product_id if product_id is not None else barcode_data,
                    float(price or 0), float(lx or 0), float(ly or 0), float(lz or 0),
                    category, json.dumps(metadata if metadata is not None else {}),
                    to_iso(self._clock()),
                ),
            )
            await db.commit()
            row_id = cur.lastrowid
        log.info("scan_saved id=%s barcode_id=%s", row_id, barcode_id)
        return {"id": row_id, "barcodeId": barcode_id}

    async def list_scans(self, limit: int = 100, offset: int = 0,
                         source: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = """
            SELECT id, barcode_id, barcode_data, barcode_type, source,
                   product_name, product_id, price, location_x, location_y, location_z,
                   category, metadata, created_at
            FROM scans
        """
        params: List[Any] = []
        if source:
            sql += " WHERE source = ?"
            params.append(source)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        return [_row_dict(r) for r in rows]

    async def delete_scan(self, scan_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM scans WHERE id = ?", (int(scan_id),))
            await db.commit()
            return cur.rowcount > 0

    async def lookup(self, barcode: str) -> Optional[Dict[str, Any]]:
        """Most recent stored row for a barcode value, or None."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT barcode_data, product_name, category, price,
                       location_x, location_y, location_z, metadata, created_at
                FROM scans
                WHERE barcode_data = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (barcode,),
            ) as cur:
                row = await cur.fetchone()
        return _row_dict(row) if row else None

    async def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"bySource": {}, "byType": {}, "total": 0}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT source, barcode_type, COUNT(*) FROM scans GROUP BY source, barcode_type"
            ) as cur:
                rows = await cur.fetchall()
        for source, btype, count in rows:
            out["total"] += count
            out["bySource"][source] = out["bySource"].get(source, 0) + count
            out["byType"][btype] = out["byType"].get(btype, 0) + count
        return out

    async def count(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM scans") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0


# ---------------------------------------------------------------------------
# Saved scans
# ---------------------------------------------------------------------------

@dataclass
class SaveResult:
    saved: bool
    saved_id: Optional[int] = None
    duplicate: bool = False
    last_saved: Optional[str] = None
    minutes_ago: Optional[float] = None


class SavedScanStore:
    def __init__(self, db_path: str | Path, *, window_s: float = 300.0,
                 clock: Callable[[], datetime] = utc_now):
        self.db_path = str(db_path)
        self.window_s = float(window_s)
        self._clock = clock
        # barcode -> [lock, holders + waiters]; entries go away when unused
        self._locks: Dict[str, List[Any]] = {}

    @contextlib.asynccontextmanager
    async def _barcode_lock(self, barcode: str):
        entry = self._locks.get(barcode)
        if entry is None:
            entry = self._locks[barcode] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[barcode]

    async def last_saved_at(self, db: aiosqlite.Connection, barcode: str) -> Optional[str]:
        async with db.execute(
            """
            SELECT saved_at FROM saved_scans
            WHERE barcode_data = ?
            ORDER BY saved_at DESC
            LIMIT 1
            """,
            (barcode,),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def save(
        self,
        *,
        barcode_data: str,
        barcode_type: Optional[str],
        source: str,
        product_name: Optional[str] = None,
        category: Optional[str] = None,
        price: Optional[float] = None,
        description: Optional[str] = None,
        metadata: Any = None,
    ) -> SaveResult:
        async with self._barcode_lock(barcode_data):
            async with aiosqlite.connect(self.db_path) as db:
                now = self._clock()
                prev = await self.last_saved_at(db, barcode_data)
                if prev is not None:
                    age_s = (now - parse_iso(prev)).total_seconds()
                    if age_s < self.window_s:
                        minutes = round(age_s / 60.0, 1)
                        log.info("saved_scan_duplicate barcode=%s minutes_ago=%s", barcode_data, minutes)
                        return SaveResult(saved=False, duplicate=True, last_saved=prev, minutes_ago=minutes)

                cur = await db.execute(
                    """
                    INSERT INTO saved_scans (barcode_data, barcode_type, source, product_name,
                                             category, price, description, metadata, saved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        barcode_data, barcode_type, source, product_name, category,
                        price, description, _json_or_none(metadata), to_iso(now),
                    ),
                )
                await db.commit()
                saved_id = cur.lastrowid
        log.info("saved_scan_inserted id=%s barcode=%s", saved_id, barcode_data)
        return SaveResult(saved=True, saved_id=saved_id)

    async def list_saved(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, barcode_data, barcode_type, source, product_name,
                       category, price, description, metadata, saved_at
                FROM saved_scans
                ORDER BY saved_at DESC, id DESC
                """
            ) as cur:
                rows = await cur.fetchall()
        return [_row_dict(r) for r in rows]

    async def delete(self, saved_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM saved_scans WHERE id = ?", (int(saved_id),))
            await db.commit()
            return cur.rowcount > 0

    async def clear(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM saved_scans")
            await db.commit()
            return cur.rowcount

    async def count(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM saved_scans") as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0
