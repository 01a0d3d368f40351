from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from focuscal.errors import SyncLeaseLostError
from focuscal.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Attendee,
    CalendarEvent,
    SyncConflict,
    SyncResult,
    SyncState,
    new_id,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalEventStore(ABC):
    """Persistence operations the sync engine relies on."""

    @abstractmethod
    def find_event(self, event_id: str) -> CalendarEvent | None: ...

    @abstractmethod
    def find_by_remote_id(self, user_id: str, calendar_id: str, remote_id: str) -> CalendarEvent | None: ...

    @abstractmethod
    def list_events(self, user_id: str, calendar_id: str) -> list[CalendarEvent]: ...

    @abstractmethod
    def insert_event(self, event: CalendarEvent) -> CalendarEvent: ...

    @abstractmethod
    def save_event(self, event: CalendarEvent) -> CalendarEvent: ...

    @abstractmethod
    def delete_event(self, event_id: str) -> bool: ...

    @abstractmethod
    def get_sync_state(self, user_id: str, calendar_id: str) -> SyncState | None: ...

    @abstractmethod
    def begin_sync_pass(self, user_id: str, calendar_id: str, *, lease_seconds: int) -> str | None: ...

    @abstractmethod
    def renew_sync_lease(self, user_id: str, calendar_id: str, lease_id: str) -> bool: ...

    @abstractmethod
    def finish_sync_pass(
        self,
        user_id: str,
        calendar_id: str,
        *,
        status: str,
        result: SyncResult | None,
        delta_token: str | None = None,
        full_sync: bool = False,
        error: str = "",
        lease_id: str | None = None,
    ) -> SyncState: ...

    @abstractmethod
    def get_conflict(self, conflict_id: str) -> SyncConflict | None: ...

    @abstractmethod
    def find_open_conflict(self, event_id: str) -> SyncConflict | None: ...

    @abstractmethod
    def save_conflict(self, conflict: SyncConflict) -> SyncConflict: ...

    @abstractmethod
    def list_open_conflicts(self, user_id: str, calendar_id: str | None = None) -> list[SyncConflict]: ...


class StateStore(LocalEventStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            remote_id TEXT,
            subject TEXT NOT NULL,
            body TEXT NOT NULL,
            location TEXT NOT NULL,
            start_at TEXT,
            end_at TEXT,
            is_all_day INTEGER NOT NULL,
            time_zone TEXT NOT NULL,
            attendees_json TEXT NOT NULL,
            categories_json TEXT NOT NULL,
            etag TEXT NOT NULL,
            remote_fingerprint TEXT NOT NULL,
            last_modified_remote TEXT,
            last_modified_local TEXT,
            locally_modified INTEGER NOT NULL,
            remotely_modified INTEGER NOT NULL,
            last_synced_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, calendar_id, remote_id)
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_scope
        ON calendar_events(user_id, calendar_id);

        CREATE TABLE IF NOT EXISTS sync_states (
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            delta_token TEXT,
            last_sync_time TEXT,
            last_full_sync TEXT,
            last_delta_sync TEXT,
            status TEXT NOT NULL,
            started_at TEXT,
            lease_id TEXT,
            last_error TEXT NOT NULL DEFAULT '',
            total_events INTEGER NOT NULL DEFAULT 0,
            processed_events INTEGER NOT NULL DEFAULT 0,
            synced_events INTEGER NOT NULL DEFAULT 0,
            conflicted_events INTEGER NOT NULL DEFAULT 0,
            failed_events INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, calendar_id)
        );

        CREATE TABLE IF NOT EXISTS sync_conflicts (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            conflict_type TEXT NOT NULL,
            fields_json TEXT NOT NULL,
            local_version_json TEXT NOT NULL,
            remote_version_json TEXT,
            remote_etag TEXT NOT NULL,
            resolution TEXT NOT NULL,
            recommended_resolution TEXT NOT NULL,
            auto_resolvable INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            resolved_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_conflicts_open
        ON sync_conflicts(user_id, calendar_id, resolved_at);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            mode TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            conflicted INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS provider_tokens (
            user_id TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            expires_at TEXT,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # events

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> CalendarEvent:
        attendees = [Attendee.from_dict(item) for item in json.loads(row["attendees_json"] or "[]")]
        return CalendarEvent(
            id=row["id"],
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            remote_id=row["remote_id"],
            subject=row["subject"],
            body=row["body"],
            location=row["location"],
            start=parse_iso_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            is_all_day=bool(row["is_all_day"]),
            time_zone=row["time_zone"],
            attendees=attendees,
            categories=list(json.loads(row["categories_json"] or "[]")),
            etag=row["etag"],
            remote_fingerprint=row["remote_fingerprint"],
            last_modified_remote=parse_iso_datetime(row["last_modified_remote"]),
            last_modified_local=parse_iso_datetime(row["last_modified_local"]),
            locally_modified=bool(row["locally_modified"]),
            remotely_modified=bool(row["remotely_modified"]),
            last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        )

    @staticmethod
    def _event_params(event: CalendarEvent) -> dict[str, Any]:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "calendar_id": event.calendar_id,
            "remote_id": event.remote_id or None,
            "subject": event.subject or "",
            "body": event.body or "",
            "location": event.location or "",
            "start_at": serialize_datetime(event.start),
            "end_at": serialize_datetime(event.end),
            "is_all_day": int(bool(event.is_all_day)),
            "time_zone": event.time_zone or "UTC",
            "attendees_json": json.dumps([a.to_dict() for a in event.attendees], ensure_ascii=False),
            "categories_json": json.dumps(sorted(set(event.categories)), ensure_ascii=False),
            "etag": event.etag or "",
            "remote_fingerprint": event.remote_fingerprint or "",
            "last_modified_remote": serialize_datetime(event.last_modified_remote),
            "last_modified_local": serialize_datetime(event.last_modified_local),
            "locally_modified": int(bool(event.locally_modified)),
            "remotely_modified": int(bool(event.remotely_modified)),
            "last_synced_at": serialize_datetime(event.last_synced_at),
            "now": _utc_now(),
        }

    def find_event(self, event_id: str) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (str(event_id),)).fetchone()
        return self._event_from_row(row) if row else None

    def find_by_remote_id(self, user_id: str, calendar_id: str, remote_id: str) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM calendar_events
                    WHERE user_id = ? AND calendar_id = ? AND remote_id = ?
                    """,
                    (user_id, calendar_id, remote_id),
                ).fetchone()
        return self._event_from_row(row) if row else None

    def list_events(self, user_id: str, calendar_id: str) -> list[CalendarEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM calendar_events
                    WHERE user_id = ? AND calendar_id = ?
                    ORDER BY start_at, id
                    """,
                    (user_id, calendar_id),
                ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def count_events(self, user_id: str, calendar_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM calendar_events WHERE user_id = ? AND calendar_id = ?",
                    (user_id, calendar_id),
                ).fetchone()
        return int(row["total"])

    def insert_event(self, event: CalendarEvent) -> CalendarEvent:
        stored = event.clone()
        if not stored.id:
            stored.id = new_id()
        params = self._event_params(stored)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_events(
                        id, user_id, calendar_id, remote_id, subject, body, location, start_at, end_at,
                        is_all_day, time_zone, attendees_json, categories_json, etag, remote_fingerprint,
                        last_modified_remote, last_modified_local, locally_modified, remotely_modified,
                        last_synced_at, created_at, updated_at
                    )
                    VALUES (
                        :id, :user_id, :calendar_id, :remote_id, :subject, :body, :location, :start_at, :end_at,
                        :is_all_day, :time_zone, :attendees_json, :categories_json, :etag, :remote_fingerprint,
                        :last_modified_remote, :last_modified_local, :locally_modified, :remotely_modified,
                        :last_synced_at, :now, :now
                    )
                    """,
                    params,
                )
                conn.commit()
        return stored

    def save_event(self, event: CalendarEvent) -> CalendarEvent:
        params = self._event_params(event)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE calendar_events SET
                        remote_id = :remote_id,
                        subject = :subject,
                        body = :body,
                        location = :location,
                        start_at = :start_at,
                        end_at = :end_at,
                        is_all_day = :is_all_day,
                        time_zone = :time_zone,
                        attendees_json = :attendees_json,
                        categories_json = :categories_json,
                        etag = :etag,
                        remote_fingerprint = :remote_fingerprint,
                        last_modified_remote = :last_modified_remote,
                        last_modified_local = :last_modified_local,
                        locally_modified = :locally_modified,
                        remotely_modified = :remotely_modified,
                        last_synced_at = :last_synced_at,
                        updated_at = :now
                    WHERE id = :id
                    """,
                    params,
                )
                conn.commit()
                if cursor.rowcount != 1:
                    raise KeyError(f"Event not found: {event.id}")
        return event

    def delete_event(self, event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM calendar_events WHERE id = ?", (str(event_id),))
                conn.commit()
                return cursor.rowcount > 0

    # sync state

    @staticmethod
    def _state_from_row(row: sqlite3.Row) -> SyncState:
        return SyncState(
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            delta_token=row["delta_token"],
            last_sync_time=parse_iso_datetime(row["last_sync_time"]),
            last_full_sync=parse_iso_datetime(row["last_full_sync"]),
            last_delta_sync=parse_iso_datetime(row["last_delta_sync"]),
            status=row["status"],
            started_at=parse_iso_datetime(row["started_at"]),
            last_error=row["last_error"] or "",
            total_events=int(row["total_events"]),
            processed_events=int(row["processed_events"]),
            synced_events=int(row["synced_events"]),
            conflicted_events=int(row["conflicted_events"]),
            failed_events=int(row["failed_events"]),
        )

    def get_sync_state(self, user_id: str, calendar_id: str) -> SyncState | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_states WHERE user_id = ? AND calendar_id = ?",
                    (user_id, calendar_id),
                ).fetchone()
        return self._state_from_row(row) if row else None

    def begin_sync_pass(self, user_id: str, calendar_id: str, *, lease_seconds: int) -> str | None:
        """Move the state to IN_PROGRESS unless another live pass holds it.

        Returns the lease id the pass must present to renew or finish, or
        ``None`` when a live lease is held elsewhere.
        """
        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(seconds=max(1, lease_seconds))).isoformat()
        lease_id = new_id()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_states(user_id, calendar_id, status, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO NOTHING
                    """,
                    (user_id, calendar_id, STATUS_PENDING, now.isoformat()),
                )
                cursor = conn.execute(
                    """
                    UPDATE sync_states
                    SET status = ?, started_at = ?, lease_id = ?, last_error = '', updated_at = ?
                    WHERE user_id = ? AND calendar_id = ?
                      AND (status != ? OR started_at IS NULL OR started_at < ?)
                    """,
                    (
                        STATUS_IN_PROGRESS,
                        now.isoformat(),
                        lease_id,
                        now.isoformat(),
                        user_id,
                        calendar_id,
                        STATUS_IN_PROGRESS,
                        stale_before,
                    ),
                )
                conn.commit()
                return lease_id if cursor.rowcount == 1 else None

    def renew_sync_lease(self, user_id: str, calendar_id: str, lease_id: str) -> bool:
        """Push the lease forward; False means the pass no longer owns the state."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_states SET started_at = ?, updated_at = ?
                    WHERE user_id = ? AND calendar_id = ? AND lease_id = ? AND status = ?
                    """,
                    (now, now, user_id, calendar_id, lease_id, STATUS_IN_PROGRESS),
                )
                conn.commit()
                return cursor.rowcount == 1

    def cancel_sync_pass(self, user_id: str, calendar_id: str, reason: str = "Cancelled by user") -> bool:
        """Fail a running pass and revoke its lease so its owner stops at the next checkpoint."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_states
                    SET status = ?, started_at = NULL, lease_id = NULL, last_error = ?, updated_at = ?
                    WHERE user_id = ? AND calendar_id = ? AND status = ?
                    """,
                    (STATUS_FAILED, reason, now, user_id, calendar_id, STATUS_IN_PROGRESS),
                )
                conn.commit()
                return cursor.rowcount == 1

    def finish_sync_pass(
        self,
        user_id: str,
        calendar_id: str,
        *,
        status: str,
        result: SyncResult | None,
        delta_token: str | None = None,
        full_sync: bool = False,
        error: str = "",
        lease_id: str | None = None,
    ) -> SyncState:
        """Close a pass. With ``lease_id`` the write only lands while the lease is still owned."""
        now = _utc_now()
        assignments = [
            "status = :status",
            "started_at = NULL",
            "lease_id = NULL",
            "last_error = :error",
            "updated_at = :now",
            "total_events = (SELECT COUNT(*) FROM calendar_events WHERE user_id = :user_id AND calendar_id = :calendar_id)",
        ]
        params: dict[str, Any] = {
            "status": status,
            "error": error,
            "now": now,
            "user_id": user_id,
            "calendar_id": calendar_id,
        }
        if result is not None:
            assignments.extend(
                [
                    "processed_events = :processed",
                    "synced_events = :synced",
                    "conflicted_events = :conflicted",
                    "failed_events = :failed",
                ]
            )
            params.update(
                {
                    "processed": result.processed,
                    "synced": result.synced,
                    "conflicted": result.conflicted,
                    "failed": result.failed,
                }
            )
        if status == STATUS_COMPLETED:
            assignments.append("last_sync_time = :now")
            assignments.append("last_full_sync = :now" if full_sync else "last_delta_sync = :now")
            if delta_token:
                assignments.append("delta_token = :delta_token")
                params["delta_token"] = delta_token
        where = "WHERE user_id = :user_id AND calendar_id = :calendar_id"
        if lease_id is not None:
            where += " AND lease_id = :lease_id AND status = :in_progress"
            params.update({"lease_id": lease_id, "in_progress": STATUS_IN_PROGRESS})
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE sync_states SET {', '.join(assignments)} {where}",  # nosec B608
                    params,
                )
                conn.commit()
                if lease_id is not None and cursor.rowcount == 0:
                    raise SyncLeaseLostError(f"Sync pass for {user_id}/{calendar_id} no longer holds its lease")
        state = self.get_sync_state(user_id, calendar_id)
        if state is None:
            raise KeyError(f"Sync state not found: {user_id}/{calendar_id}")
        return state

    def delete_sync_state(self, user_id: str, calendar_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM sync_states WHERE user_id = ? AND calendar_id = ?",
                    (user_id, calendar_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    # conflicts

    @staticmethod
    def _conflict_from_row(row: sqlite3.Row) -> SyncConflict:
        remote_json = row["remote_version_json"]
        return SyncConflict(
            id=row["id"],
            event_id=row["event_id"],
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            type=row["conflict_type"],
            fields=list(json.loads(row["fields_json"] or "[]")),
            local_version=json.loads(row["local_version_json"] or "{}"),
            remote_version=json.loads(remote_json) if remote_json else None,
            remote_etag=row["remote_etag"],
            resolution=row["resolution"],
            recommended_resolution=row["recommended_resolution"],
            auto_resolvable=bool(row["auto_resolvable"]),
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
            resolved_at=parse_iso_datetime(row["resolved_at"]),
        )

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (str(conflict_id),)).fetchone()
        return self._conflict_from_row(row) if row else None

    def find_open_conflict(self, event_id: str) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM sync_conflicts
                    WHERE event_id = ? AND resolved_at IS NULL
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (str(event_id),),
                ).fetchone()
        return self._conflict_from_row(row) if row else None

    def save_conflict(self, conflict: SyncConflict) -> SyncConflict:
        stored = conflict
        now = datetime.now(timezone.utc)
        if not stored.id:
            stored.id = new_id()
            stored.created_at = now
        stored.updated_at = now
        params = {
            "id": stored.id,
            "event_id": stored.event_id,
            "user_id": stored.user_id,
            "calendar_id": stored.calendar_id,
            "conflict_type": stored.type,
            "fields_json": json.dumps(list(stored.fields)),
            "local_version_json": json.dumps(stored.local_version, ensure_ascii=False),
            "remote_version_json": (
                json.dumps(stored.remote_version, ensure_ascii=False) if stored.remote_version is not None else None
            ),
            "remote_etag": stored.remote_etag or "",
            "resolution": stored.resolution,
            "recommended_resolution": stored.recommended_resolution,
            "auto_resolvable": int(bool(stored.auto_resolvable)),
            "created_at": serialize_datetime(stored.created_at or now),
            "updated_at": serialize_datetime(now),
            "resolved_at": serialize_datetime(stored.resolved_at),
        }
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_conflicts(
                        id, event_id, user_id, calendar_id, conflict_type, fields_json, local_version_json,
                        remote_version_json, remote_etag, resolution, recommended_resolution, auto_resolvable,
                        created_at, updated_at, resolved_at
                    )
                    VALUES (
                        :id, :event_id, :user_id, :calendar_id, :conflict_type, :fields_json, :local_version_json,
                        :remote_version_json, :remote_etag, :resolution, :recommended_resolution, :auto_resolvable,
                        :created_at, :updated_at, :resolved_at
                    )
                    ON CONFLICT(id) DO UPDATE SET
                        conflict_type = excluded.conflict_type,
                        fields_json = excluded.fields_json,
                        local_version_json = excluded.local_version_json,
                        remote_version_json = excluded.remote_version_json,
                        remote_etag = excluded.remote_etag,
                        resolution = excluded.resolution,
                        recommended_resolution = excluded.recommended_resolution,
                        auto_resolvable = excluded.auto_resolvable,
                        updated_at = excluded.updated_at,
                        resolved_at = excluded.resolved_at
                    """,
                    params,
                )
                conn.commit()
        return stored

    def list_open_conflicts(self, user_id: str, calendar_id: str | None = None) -> list[SyncConflict]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT * FROM sync_conflicts
                        WHERE user_id = ? AND resolved_at IS NULL
                        ORDER BY created_at DESC
                        """,
                        (user_id,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM sync_conflicts
                        WHERE user_id = ? AND calendar_id = ? AND resolved_at IS NULL
                        ORDER BY created_at DESC
                        """,
                        (user_id, calendar_id),
                    ).fetchall()
        return [self._conflict_from_row(row) for row in rows]

    def conflict_stats(self, user_id: str) -> dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT conflict_type, resolution, resolved_at IS NULL AS is_open, COUNT(*) AS total
                    FROM sync_conflicts
                    WHERE user_id = ?
                    GROUP BY conflict_type, resolution, is_open
                    """,
                    (user_id,),
                ).fetchall()
        stats: dict[str, Any] = {"open": 0, "resolved": 0, "by_type": {}, "by_resolution": {}}
        for row in rows:
            total = int(row["total"])
            if row["is_open"]:
                stats["open"] += total
                by_type = stats["by_type"]
                by_type[row["conflict_type"]] = by_type.get(row["conflict_type"], 0) + total
            else:
                stats["resolved"] += total
                by_resolution = stats["by_resolution"]
                by_resolution[row["resolution"]] = by_resolution.get(row["resolution"], 0) + total
        return stats

    # sync runs

    def record_sync_run(self, result: SyncResult) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, user_id, calendar_id, mode, trigger, status, message, duration_ms,
                        created, updated, deleted, conflicted, failed
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        serialize_datetime(result.run_at),
                        result.user_id,
                        result.calendar_id,
                        result.mode,
                        result.trigger,
                        result.status,
                        result.message,
                        int(result.duration_ms),
                        result.created,
                        result.updated,
                        result.deleted,
                        result.conflicted,
                        result.failed,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute(
                        "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM sync_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                        (user_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

    # audit

    def record_audit_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        subject_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, user_id, calendar_id, subject_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), user_id, calendar_id, subject_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute(
                        "SELECT * FROM audit_events ORDER BY id DESC LIMIT ?",
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM audit_events WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                        (user_id, max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # provider tokens

    def set_provider_token(self, user_id: str, access_token: str, expires_at: datetime | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO provider_tokens(user_id, access_token, expires_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        access_token = excluded.access_token,
                        expires_at = excluded.expires_at,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, access_token, serialize_datetime(expires_at), _utc_now()),
                )
                conn.commit()

    def get_provider_token(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT user_id, access_token, expires_at FROM provider_tokens WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "access_token": row["access_token"],
            "expires_at": parse_iso_datetime(row["expires_at"]),
        }

    def delete_provider_token(self, user_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM provider_tokens WHERE user_id = ?", (user_id,))
                conn.commit()
                return cursor.rowcount > 0
