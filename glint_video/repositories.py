from __future__ import annotations

import logging
import re
from contextlib import closing
from typing import Any, Protocol
from uuid import uuid4

from .classifier import Conventions, classify, thumbnail_url
from .db import connect, init_db, utc_now
from .models import FailureReason, IdentifierKind, LifecycleStatus, Outcome, ResolutionResult, VideoRecord
from .settings import Settings


logger = logging.getLogger(__name__)

# apply_resolution() outcomes
PATCHED = "patched"
MARKED_TERMINAL = "marked_terminal"
UNCHANGED = "unchanged"
FROZEN = "frozen"
IGNORED = "ignored"
MISSING = "missing"


class Repository(Protocol):
    backend_name: str

    def get_record(self, record_id: str) -> VideoRecord | None: ...

    def list_records(self, *, owner_id: str | None = None, limit: int = 50, offset: int = 0) -> list[VideoRecord]: ...

    def iter_records(self, *, owner_id: str | None = None) -> list[VideoRecord]: ...

    def insert_record(self, owner_id: str, raw_reference: str, *, record_id: str | None = None) -> VideoRecord: ...

    def find_by_reference(
        self, *, upload_id: str | None = None, asset_id: str | None = None, raw_reference: str | None = None
    ) -> VideoRecord | None: ...

    def apply_resolution(
        self, record_id: str, result: ResolutionResult, *, upload_id: str | None = None
    ) -> str: ...

    def mark_terminal(self, record_id: str, result: ResolutionResult) -> str: ...

    def stats(self) -> dict[str, Any]: ...


def sanitize_record_id(v: object) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "", str(v or "").strip())
    return cleaned or uuid4().hex


_TERMINAL_SQL = "('errored', 'deleted')"


class SqliteRepository:
    """VideoRecord store backed by the local SQLite file.

    `apply_resolution()` is the only write path for resolution outcomes. The
    resolver, the webhook reconciler and the batch job all go through it, so the
    "never touch a terminal record" and "skip identical writes" rules live in
    exactly one SQL statement each.
    """

    backend_name = "sqlite"

    def __init__(self, settings: Settings, *, conventions: Conventions | None = None):
        self.settings = settings
        self.conventions = conventions or Conventions.from_settings(settings)
        with closing(connect(self.settings.GV_DB_PATH)) as conn:
            init_db(conn)

    def _conn(self):
        return closing(connect(self.settings.GV_DB_PATH))

    def get_record(self, record_id: str) -> VideoRecord | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM videos WHERE record_id=?", (record_id,)).fetchone()
        return VideoRecord.from_row(row) if row else None

    def list_records(self, *, owner_id: str | None = None, limit: int = 50, offset: int = 0) -> list[VideoRecord]:
        sql = "SELECT * FROM videos"
        params: list[Any] = []
        if owner_id:
            sql += " WHERE owner_id=?"
            params.append(owner_id)
        sql += " ORDER BY created_at DESC, record_id ASC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [VideoRecord.from_row(r) for r in rows]

    def iter_records(self, *, owner_id: str | None = None) -> list[VideoRecord]:
        sql = "SELECT * FROM videos"
        params: tuple[Any, ...] = ()
        if owner_id:
            sql += " WHERE owner_id=?"
            params = (owner_id,)
        sql += " ORDER BY created_at ASC, record_id ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [VideoRecord.from_row(r) for r in rows]

    def _identifiers_for(self, raw_reference: str) -> tuple[str | None, str | None]:
        """(asset_id, upload_id) implied by the reference's shape, e.g. an asset id inside a stream URL."""

        ident = classify(raw_reference, self.conventions)
        if ident.kind is IdentifierKind.ASSET_ID:
            return ident.id, None
        if ident.kind is IdentifierKind.UPLOAD_ID:
            return None, ident.id
        return None, None

    def insert_record(self, owner_id: str, raw_reference: str, *, record_id: str | None = None) -> VideoRecord:
        owner = str(owner_id or "").strip()
        if not owner:
            raise ValueError("owner_id is required")
        ref = str(raw_reference or "").strip()
        if not ref:
            raise ValueError("raw_reference is required")
        rid = sanitize_record_id(record_id)
        asset_id, upload_id = self._identifiers_for(ref)
        now = utc_now()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO videos(
                    record_id, owner_id, raw_reference, lifecycle_status, asset_id, upload_id, created_at, updated_at
                )
                VALUES(?, ?, ?, 'pending', ?, ?, ?, ?)
                """,
                (rid, owner, ref, asset_id, upload_id, now, now),
            )
            conn.commit()
        logger.info("Registered record %s (owner=%s)", rid, owner)
        return VideoRecord(
            record_id=rid,
            owner_id=owner,
            raw_reference=ref,
            asset_id=asset_id,
            upload_id=upload_id,
            created_at=now,
            updated_at=now,
        )

    def backfill_identifiers(self) -> int:
        """Fill asset_id/upload_id on rows stored before references were classified at insert time."""

        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT record_id, raw_reference FROM videos
                WHERE asset_id IS NULL AND upload_id IS NULL
                  AND lifecycle_status NOT IN {_TERMINAL_SQL}
                """
            ).fetchall()
            n = 0
            for row in rows:
                asset_id, upload_id = self._identifiers_for(str(row["raw_reference"] or ""))
                if asset_id or upload_id:
                    conn.execute(
                        "UPDATE videos SET asset_id=?, upload_id=? WHERE record_id=?",
                        (asset_id, upload_id, row["record_id"]),
                    )
                    n += 1
            conn.commit()
        if n:
            logger.info("Backfilled provider ids on %d record(s)", n)
        return n

    def find_by_reference(
        self,
        *,
        upload_id: str | None = None,
        asset_id: str | None = None,
        raw_reference: str | None = None,
    ) -> VideoRecord | None:
        """Upload id first, then asset id, then the raw stored reference."""

        lookups: list[tuple[str, tuple[Any, ...]]] = []
        if upload_id:
            lookups.append(("upload_id=? OR raw_reference=?", (upload_id, upload_id)))
        if asset_id:
            lookups.append(("asset_id=? OR raw_reference=?", (asset_id, asset_id)))
        if raw_reference:
            lookups.append(("raw_reference=?", (raw_reference,)))
        with self._conn() as conn:
            for where, params in lookups:
                row = conn.execute(
                    f"SELECT * FROM videos WHERE {where} ORDER BY created_at DESC LIMIT 1", params
                ).fetchone()
                if row:
                    return VideoRecord.from_row(row)
        return None

    def apply_resolution(
        self,
        record_id: str,
        result: ResolutionResult,
        *,
        upload_id: str | None = None,
    ) -> str:
        if result.outcome is Outcome.RESOLVED:
            return self._patch_resolved(record_id, result, upload_id=upload_id)
        if result.is_terminal_failure:
            return self.mark_terminal(record_id, result)
        # Pending / provider-unavailable / malformed never change status or URL,
        # but ids learned on the way are kept so a later webhook can find the record.
        if result.asset_id or upload_id:
            self._note_identifiers(record_id, asset_id=result.asset_id, upload_id=upload_id)
        return IGNORED

    def _note_identifiers(self, record_id: str, *, asset_id: str | None, upload_id: str | None) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                UPDATE videos SET
                    asset_id=COALESCE(asset_id, ?),
                    upload_id=COALESCE(upload_id, ?),
                    updated_at=?
                WHERE record_id=?
                  AND lifecycle_status NOT IN {_TERMINAL_SQL}
                  AND ((asset_id IS NULL AND ? IS NOT NULL) OR (upload_id IS NULL AND ? IS NOT NULL))
                """,
                (asset_id, upload_id, utc_now(), record_id, asset_id, upload_id),
            )
            conn.commit()
        if cur.rowcount:
            logger.debug("Record %s: noted asset=%s upload=%s", record_id, asset_id, upload_id)
        return bool(cur.rowcount)

    def _patch_resolved(self, record_id: str, result: ResolutionResult, *, upload_id: str | None) -> str:
        playback_id = str(result.playback_id or "")
        playback_url = str(result.playback_url or "")
        if not playback_id or not playback_url:
            raise ValueError("resolved result without playback id/url")
        now = utc_now()
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                UPDATE videos SET
                    playback_url=?,
                    playback_id=?,
                    thumbnail_url=?,
                    lifecycle_status='ready',
                    asset_id=COALESCE(?, asset_id),
                    upload_id=COALESCE(?, upload_id),
                    updated_at=?
                WHERE record_id=?
                  AND lifecycle_status NOT IN {_TERMINAL_SQL}
                  AND NOT (
                    lifecycle_status='ready'
                    AND playback_id IS ?
                    AND playback_url IS ?
                  )
                """,
                (
                    playback_url,
                    playback_id,
                    thumbnail_url(playback_id, self.conventions),
                    result.asset_id,
                    upload_id,
                    now,
                    record_id,
                    playback_id,
                    playback_url,
                ),
            )
            conn.commit()
            if cur.rowcount:
                logger.info("Patched record %s -> %s", record_id, playback_url)
                return PATCHED
            return self._why_not_written(conn, record_id)

    def mark_terminal(self, record_id: str, result: ResolutionResult) -> str:
        """Move a record to errored/deleted and drop its URL so the app asks for a re-upload."""

        if not result.is_terminal_failure:
            raise ValueError(f"not a terminal failure: {result.outcome.value}")
        status = (
            LifecycleStatus.DELETED
            if result.reason is FailureReason.ASSET_DELETED
            else LifecycleStatus.ERRORED
        )
        now = utc_now()
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                UPDATE videos SET
                    lifecycle_status=?,
                    playback_url=NULL,
                    thumbnail_url=NULL,
                    asset_id=COALESCE(?, asset_id),
                    updated_at=?
                WHERE record_id=? AND lifecycle_status NOT IN {_TERMINAL_SQL}
                """,
                (status.value, result.asset_id, now, record_id),
            )
            conn.commit()
            if cur.rowcount:
                logger.warning("Record %s marked %s; it needs a re-upload", record_id, status.value)
                return MARKED_TERMINAL
            return self._why_not_written(conn, record_id)

    @staticmethod
    def _why_not_written(conn, record_id: str) -> str:
        row = conn.execute("SELECT lifecycle_status FROM videos WHERE record_id=?", (record_id,)).fetchone()
        if row is None:
            return MISSING
        if str(row[0]) in ("errored", "deleted"):
            return FROZEN
        return UNCHANGED

    def stats(self) -> dict[str, Any]:
        with self._conn() as conn:
            total = conn.execute("SELECT COUNT(*) FROM videos").fetchone()[0]
            by_status = {
                str(r[0]): int(r[1])
                for r in conn.execute(
                    "SELECT lifecycle_status, COUNT(*) FROM videos GROUP BY lifecycle_status"
                ).fetchall()
            }
            owners = conn.execute("SELECT COUNT(DISTINCT owner_id) FROM videos").fetchone()[0]
            last_updated_at = conn.execute("SELECT MAX(updated_at) FROM videos").fetchone()[0]
        return {
            "db_path": str(self.settings.GV_DB_PATH),
            "counts": {
                "records": int(total),
                "owners": int(owners),
                **{s.value: by_status.get(s.value, 0) for s in LifecycleStatus},
            },
            "last_updated_at": last_updated_at,
        }


def make_repository(settings: Settings) -> SqliteRepository:
    return SqliteRepository(settings, conventions=Conventions.from_settings(settings))

