from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .duration import Duration
from .errors import PersistenceError
from .models import AuditAction, AuditEntry, CumulativeTimeRecord


class Database:
    """Thin SQLite access layer for the audit log and cumulative totals."""

    def __init__(self, db_path: str | Path) -> None:
        try:
            self._conn = sqlite3.connect(str(db_path))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to open database {db_path}") from exc
        self._conn.row_factory = sqlite3.Row
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._conn.close()
        self._closed = True

    def initialize(self) -> None:
        # audit_log: append-only join/leave history.
        # cumulative_time: one running total per user.
        with _translate_errors("initialize schema"):
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  username TEXT NOT NULL,
                  action TEXT NOT NULL CHECK (action IN ('join', 'leave')),
                  timestamp_utc TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_log_user ON audit_log (user_id);

                CREATE TABLE IF NOT EXISTS cumulative_time (
                  user_id TEXT PRIMARY KEY,
                  username TEXT NOT NULL,
                  total_seconds INTEGER NOT NULL DEFAULT 0,
                  last_updated_at_utc TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def append_audit_entry(self, entry: AuditEntry) -> None:
        with _translate_errors("append audit entry"):
            self._conn.execute(
                """
                INSERT INTO audit_log (user_id, username, action, timestamp_utc)
                VALUES (?, ?, ?, ?)
                """,
                (entry.user_id, entry.username, entry.action.value, _to_utc(entry.timestamp).isoformat()),
            )
            self._conn.commit()

    def list_audit_entries(self, user_id: str | None = None) -> list[AuditEntry]:
        query = "SELECT user_id, username, action, timestamp_utc FROM audit_log"
        params: tuple[str, ...] = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY id ASC"

        with _translate_errors("list audit entries"):
            rows = self._conn.execute(query, params).fetchall()

        return [
            AuditEntry(
                username=row["username"],
                user_id=row["user_id"],
                action=AuditAction(row["action"]),
                timestamp=datetime.fromisoformat(row["timestamp_utc"]),
            )
            for row in rows
        ]

    def upsert_cumulative_time(self, record: CumulativeTimeRecord) -> None:
        with _translate_errors("upsert cumulative time"):
            self._conn.execute(
                """
                INSERT INTO cumulative_time (user_id, username, total_seconds, last_updated_at_utc)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id)
                DO UPDATE SET
                  username=excluded.username,
                  total_seconds=excluded.total_seconds,
                  last_updated_at_utc=excluded.last_updated_at_utc
                """,
                (
                    record.user_id,
                    record.username,
                    record.cumulative_duration.total_seconds,
                    _to_utc(record.last_updated_at).isoformat(),
                ),
            )
            self._conn.commit()

    def find_cumulative_time(self, user_id: str) -> CumulativeTimeRecord | None:
        with _translate_errors("find cumulative time"):
            row = self._conn.execute(
                """
                SELECT user_id, username, total_seconds, last_updated_at_utc
                FROM cumulative_time
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()

        if row is None:
            return None
        return CumulativeTimeRecord(
            user_id=row["user_id"],
            username=row["username"],
            cumulative_duration=Duration.from_seconds(row["total_seconds"]),
            last_updated_at=datetime.fromisoformat(row["last_updated_at_utc"]),
        )


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise PersistenceError(f"Failed to {operation}") from exc


def _to_utc(value: datetime) -> datetime:
    """Normalize a timezone-aware datetime to UTC for storage."""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)
