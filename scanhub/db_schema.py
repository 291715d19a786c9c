from __future__ import annotations
import sqlite3


"""
scanhub/db_schema.py
--------------------
Centralized, idempotent SQLite schema management for ScanHub.

Design goals
- scans: append-only history of every enriched device scan. No uniqueness
  beyond the generated barcode_id; the same barcode may appear many times.
- saved_scans: user-confirmed scans. Duplicate suppression is a time window
  enforced by the store, not a constraint, so the same barcode may be saved
  again once the window has elapsed. The (barcode_data, saved_at) index keeps
  the "most recent save for this barcode" lookup cheap.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

Timestamps are ISO-8601 UTC strings written by the application so that
lexical ORDER BY matches chronological order.
"""

from pathlib import Path

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 1

# ------------------------
# DDL: Scan history
# ------------------------
SCANS_DDL = """
CREATE TABLE IF NOT EXISTS scans (
    id           INTEGER PRIMARY KEY,
    barcode_id   TEXT NOT NULL,             -- generated 'SCAN_<ms>_<rand>'
    barcode_data TEXT NOT NULL,             -- raw payload as read by the device
    barcode_type TEXT,                      -- scanType reported by the device
    source       TEXT,                      -- 'esp32', 'mobile', ...
    product_name TEXT,
    product_id   TEXT,
    price        REAL DEFAULT 0,
    location_x   REAL DEFAULT 0,
    location_y   REAL DEFAULT 0,
    location_z   REAL DEFAULT 0,
    category     TEXT,
    metadata     TEXT,                      -- JSON: device + aiAnalysis snapshot
    created_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scans_created ON scans(created_at);
CREATE INDEX IF NOT EXISTS idx_scans_barcode ON scans(barcode_data, created_at);
CREATE INDEX IF NOT EXISTS idx_scans_source ON scans(source);
"""

# ------------------------
# DDL: User-confirmed saves
# ------------------------
SAVED_SCANS_DDL = """
CREATE TABLE IF NOT EXISTS saved_scans (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    barcode_data TEXT NOT NULL,
    barcode_type TEXT,
    source       TEXT NOT NULL,
    product_name TEXT,
    category     TEXT,
    price        REAL,
    description  TEXT,
    metadata     TEXT,                      -- JSON
    saved_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_saved_scans_barcode_saved ON saved_scans(barcode_data, saved_at);
"""


def _exec_script(conn: sqlite3.Connection, sql: str) -> None:
    conn.executescript(sql)


def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS saved_scans")
    cur.execute("DROP TABLE IF EXISTS scans")
    cur.execute("DROP INDEX IF EXISTS idx_saved_scans_barcode_saved")
    cur.execute("DROP INDEX IF EXISTS idx_scans_created")
    cur.execute("DROP INDEX IF EXISTS idx_scans_barcode")
    cur.execute("DROP INDEX IF EXISTS idx_scans_source")
    conn.commit()


def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, SCANS_DDL)
        _exec_script(conn, SAVED_SCANS_DDL)

        # Record user_version for lightweight migrations.
        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()


def schema_version(db_path: str | Path) -> int:
    """Return PRAGMA user_version (0 for a database we never touched)."""
    conn = sqlite3.connect(Path(db_path))
    try:
        return int(conn.execute("PRAGMA user_version").fetchone()[0])
    finally:
        conn.close()
