"""SQLite store for rate-limit hits, request logs and reservation shadows."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import RequestLogEntry, ReservationDetail

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS booking_rate_limits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key_hash TEXT NOT NULL,
    kind TEXT NOT NULL,
    request_id TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS booking_request_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    endpoint TEXT NOT NULL,
    request_id TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    details TEXT DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reservation_details (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    booking_uid TEXT NOT NULL UNIQUE,
    yacht_slug TEXT NOT NULL,
    yacht_name TEXT DEFAULT '',
    start_at TEXT NOT NULL,
    end_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'booked',
    guest_name TEXT DEFAULT '',
    guest_email TEXT DEFAULT '',
    guest_phone TEXT DEFAULT '',
    requested_hours INTEGER DEFAULT 0,
    shift_fit TEXT DEFAULT '',
    segment TEXT DEFAULT '',
    notes TEXT DEFAULT '',
    source TEXT DEFAULT '',
    created_by TEXT DEFAULT '',
    updated_by TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reservation_change_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    booking_uid TEXT NOT NULL,
    action TEXT NOT NULL,
    actor TEXT DEFAULT '',
    details TEXT DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""

MIGRATIONS = [
    # Migration 1: keep previous provider uids when a booking is rescheduled
    [
        "ALTER TABLE reservation_details ADD COLUMN booking_uid_history TEXT DEFAULT '[]'",
    ],
    # Migration 2: indexes for the rolling-window count and per-booking history
    [
        "CREATE INDEX IF NOT EXISTS idx_rate_limits_key ON booking_rate_limits(key_hash, created_at)",
        "CREATE INDEX IF NOT EXISTS idx_change_log_uid ON reservation_change_log(booking_uid)",
    ],
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    def __init__(self, db_path: str | Path = "charterbook.db"):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        # Requests may be served from worker threads; access is serialized by _lock
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(DB_SCHEMA)
        self._run_migrations()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _run_migrations(self) -> None:
        """Run ALTER TABLE migrations for existing databases."""
        for migration_stmts in MIGRATIONS:
            for stmt in migration_stmts:
                try:
                    self._conn.execute(stmt)
                except sqlite3.OperationalError:
                    pass  # Column already exists
        self._conn.commit()

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            self.connect()
        return self._conn

    # --- Rate limits ---

    def count_rate_limit_hits(self, key_hash: str, since: datetime) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM booking_rate_limits WHERE key_hash = ? AND created_at >= ?",
            (key_hash, since.astimezone(timezone.utc).isoformat()),
        ).fetchone()
        return row["cnt"]

    def record_rate_limit_hit(
        self, key_hash: str, kind: str, request_id: str = "", at: datetime | None = None
    ) -> None:
        created = (at or _utcnow()).astimezone(timezone.utc)
        with self._lock:
            self.conn.execute(
                "INSERT INTO booking_rate_limits (key_hash, kind, request_id, created_at) VALUES (?, ?, ?, ?)",
                (key_hash, kind, request_id, created.isoformat()),
            )
            self.conn.commit()

    # --- Request logs ---

    def log_request(
        self, endpoint: str, request_id: str, status_code: int, details: dict[str, Any] | None = None
    ) -> None:
        with self._lock:
            self.conn.execute(
                """INSERT INTO booking_request_logs
                (endpoint, request_id, status_code, details, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    endpoint,
                    request_id,
                    status_code,
                    json.dumps(details or {}, default=str),
                    _utcnow().isoformat(),
                ),
            )
            self.conn.commit()

    def get_request_logs(self, request_id: str = "", limit: int = 50) -> list[RequestLogEntry]:
        if request_id:
            rows = self.conn.execute(
                "SELECT * FROM booking_request_logs WHERE request_id = ? ORDER BY id DESC LIMIT ?",
                (request_id, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM booking_request_logs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            RequestLogEntry(
                endpoint=row["endpoint"],
                request_id=row["request_id"],
                status_code=row["status_code"],
                details=json.loads(row["details"] or "{}"),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # --- Reservation shadows ---

    def upsert_reservation(self, detail: ReservationDetail) -> int:
        """Insert or refresh the shadow row for a provider booking uid."""
        now = _utcnow().isoformat()
        with self._lock:
            self.conn.execute(
                """INSERT INTO reservation_details
                (booking_uid, yacht_slug, yacht_name, start_at, end_at, status,
                 guest_name, guest_email, guest_phone, requested_hours, shift_fit,
                 segment, notes, source, created_by, updated_by, booking_uid_history,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(booking_uid) DO UPDATE SET
                    yacht_slug=excluded.yacht_slug, yacht_name=excluded.yacht_name,
                    start_at=excluded.start_at, end_at=excluded.end_at,
                    status=excluded.status, guest_name=excluded.guest_name,
                    guest_email=excluded.guest_email, guest_phone=excluded.guest_phone,
                    requested_hours=excluded.requested_hours, shift_fit=excluded.shift_fit,
                    segment=excluded.segment, notes=excluded.notes,
                    updated_by=excluded.updated_by,
                    booking_uid_history=excluded.booking_uid_history,
                    updated_at=excluded.updated_at""",
                (
                    detail.booking_uid,
                    detail.yacht_slug,
                    detail.yacht_name,
                    detail.start_at.isoformat(),
                    detail.end_at.isoformat(),
                    detail.status,
                    detail.guest_name,
                    detail.guest_email,
                    detail.guest_phone,
                    detail.requested_hours,
                    detail.shift_fit,
                    detail.segment,
                    detail.notes,
                    detail.source,
                    detail.created_by,
                    detail.updated_by or detail.created_by,
                    json.dumps(detail.booking_uid_history),
                    now,
                    now,
                ),
            )
            self.conn.commit()
            row = self.conn.execute(
                "SELECT id FROM reservation_details WHERE booking_uid = ?", (detail.booking_uid,)
            ).fetchone()
            return row["id"]

    def _row_to_reservation(self, row: sqlite3.Row) -> ReservationDetail:
        """Deserialize a database row into a ReservationDetail."""
        keys = row.keys()
        return ReservationDetail(
            id=row["id"],
            booking_uid=row["booking_uid"],
            yacht_slug=row["yacht_slug"],
            yacht_name=row["yacht_name"] or "",
            start_at=datetime.fromisoformat(row["start_at"]),
            end_at=datetime.fromisoformat(row["end_at"]),
            status=row["status"],
            guest_name=row["guest_name"] or "",
            guest_email=row["guest_email"] or "",
            guest_phone=row["guest_phone"] or "",
            requested_hours=row["requested_hours"] or 0,
            shift_fit=row["shift_fit"] or "",
            segment=row["segment"] or "",
            notes=row["notes"] or "",
            source=row["source"] or "",
            created_by=row["created_by"] or "",
            updated_by=row["updated_by"] or "",
            booking_uid_history=(
                json.loads(row["booking_uid_history"] or "[]")
                if "booking_uid_history" in keys else []
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_reservation_by_uid(self, booking_uid: str) -> ReservationDetail | None:
        if not booking_uid:
            return None
        row = self.conn.execute(
            "SELECT * FROM reservation_details WHERE booking_uid = ?", (booking_uid,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_reservation(row)

    def get_reservations(self, yacht_slug: str = "", limit: int = 50) -> list[ReservationDetail]:
        if yacht_slug:
            rows = self.conn.execute(
                "SELECT * FROM reservation_details WHERE yacht_slug = ? ORDER BY start_at DESC LIMIT ?",
                (yacht_slug, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM reservation_details ORDER BY start_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_reservation(row) for row in rows]

    def update_reservation_status(self, booking_uid: str, status: str, actor: str = "") -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "UPDATE reservation_details SET status = ?, updated_by = ?, updated_at = ? WHERE booking_uid = ?",
                (status, actor, _utcnow().isoformat(), booking_uid),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    # --- Change log ---

    def add_reservation_change(
        self, booking_uid: str, action: str, actor: str = "", details: dict[str, Any] | None = None
    ) -> int:
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO reservation_change_log
                (booking_uid, action, actor, details, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (booking_uid, action, actor, json.dumps(details or {}, default=str), _utcnow().isoformat()),
            )
            self.conn.commit()
            return cursor.lastrowid

    def get_reservation_changes(self, booking_uid: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM reservation_change_log WHERE booking_uid = ? ORDER BY id",
            (booking_uid,),
        ).fetchall()
        return [
            {
                "id": row["id"],
                "booking_uid": row["booking_uid"],
                "action": row["action"],
                "actor": row["actor"] or "",
                "details": json.loads(row["details"] or "{}"),
                "created_at": datetime.fromisoformat(row["created_at"]),
            }
            for row in rows
        ]
