from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA temp_store=MEMORY;

CREATE TABLE IF NOT EXISTS videos (
    record_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    raw_reference TEXT NOT NULL,
    playback_url TEXT,
    thumbnail_url TEXT,
    lifecycle_status TEXT NOT NULL DEFAULT 'pending',
    asset_id TEXT,
    upload_id TEXT,
    playback_id TEXT,
    created_at TEXT,
    updated_at TEXT
);
"""


def utc_now() -> str:
    # Microseconds so consecutive writes to one record still order correctly.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _ensure_columns(conn)
    _ensure_indexes(conn)
    conn.commit()


def _cols(conn: sqlite3.Connection, table: str) -> set[str]:
    try:
        return {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    except sqlite3.Error:
        return set()


def _ensure_columns(conn: sqlite3.Connection) -> None:
    """Best-effort schema migration for existing databases.

    Databases created before the denormalized id columns existed only carry the
    reference and URL. Adding columns is the only ALTER we rely on.
    """

    to_add: list[tuple[str, str]] = [
        ("thumbnail_url", "TEXT"),
        ("lifecycle_status", "TEXT NOT NULL DEFAULT 'pending'"),
        ("asset_id", "TEXT"),
        ("upload_id", "TEXT"),
        ("playback_id", "TEXT"),
        ("created_at", "TEXT"),
        ("updated_at", "TEXT"),
    ]
    existing = _cols(conn, "videos")
    for name, decl in to_add:
        if name not in existing:
            conn.execute(f"ALTER TABLE videos ADD COLUMN {name} {decl}")

    # Older rows used free-form status strings ("processing", "error").
    conn.execute(
        """
        UPDATE videos SET lifecycle_status = CASE
            WHEN lifecycle_status IN ('error', 'failed') THEN 'errored'
            WHEN lifecycle_status IN ('processing', 'uploading', '') THEN 'pending'
            ELSE lifecycle_status
        END
        WHERE lifecycle_status NOT IN ('pending', 'ready', 'errored', 'deleted')
        """
    )


def _ensure_indexes(conn: sqlite3.Connection) -> None:
    """Create indexes after migrations (CREATE INDEX fails on a missing column)."""

    cols = _cols(conn, "videos")
    if "owner_id" in cols:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_owner_id ON videos(owner_id)")
    if "raw_reference" in cols:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_raw_reference ON videos(raw_reference)")
    if "asset_id" in cols:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_asset_id ON videos(asset_id)")
    if "upload_id" in cols:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_upload_id ON videos(upload_id)")
    if "lifecycle_status" in cols:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_lifecycle_status ON videos(lifecycle_status)")
