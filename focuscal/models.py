from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


STATUS_PENDING = "PENDING"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
SYNC_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)

CONFLICT_TITLE = "TITLE"
CONFLICT_TIME_MISMATCH = "TIME_MISMATCH"
CONFLICT_LOCATION_MISMATCH = "LOCATION_MISMATCH"
CONFLICT_BOTH_MODIFIED = "BOTH_MODIFIED"
CONFLICT_TYPES = (CONFLICT_TITLE, CONFLICT_TIME_MISMATCH, CONFLICT_LOCATION_MISMATCH, CONFLICT_BOTH_MODIFIED)

RESOLUTION_PENDING = "PENDING"
RESOLUTION_USE_LOCAL = "USE_LOCAL"
RESOLUTION_USE_REMOTE = "USE_REMOTE"
RESOLUTION_MERGE = "MERGE"
RESOLUTION_MANUAL = "MANUAL"
RESOLUTIONS = (RESOLUTION_USE_LOCAL, RESOLUTION_USE_REMOTE, RESOLUTION_MERGE, RESOLUTION_MANUAL)

MODE_FULL = "full"
MODE_DELTA = "delta"
SYNC_MODES = (MODE_FULL, MODE_DELTA)

DIRECTION_PULL = "pull"
DIRECTION_PUSH = "push"
DIRECTION_BIDIRECTIONAL = "bidirectional"
SYNC_DIRECTIONS = (DIRECTION_PULL, DIRECTION_PUSH, DIRECTION_BIDIRECTIONAL)

PROVIDER_KINDS = ("microsoft", "google")

CONTENT_FIELDS = ("subject", "body", "location", "start", "end", "is_all_day", "attendees", "categories")
DEFAULT_TRIVIAL_FIELDS = ["body", "categories"]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if not isinstance(value, str):
        raise TypeError(f"expected ISO datetime string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def sync_window(now: datetime, window_days: int) -> tuple[datetime, datetime]:
    """Return the full-sync window: start of today through ``window_days`` ahead."""
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = datetime.combine(now_utc.date(), time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=max(1, window_days))
    return start, end


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ProviderConfig:
    kind: str = "microsoft"
    base_url: str = ""
    timeout_seconds: int = 30
    page_size: int = 100
    max_batch_size: int = 20
    app_token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderConfig":
        data = data or {}
        kind = str(data.get("kind", "microsoft")).strip().lower()
        if kind not in PROVIDER_KINDS:
            kind = "microsoft"
        return cls(
            kind=kind,
            base_url=str(data.get("base_url", "") or "").strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=max(1, int(data.get("page_size", 100))),
            max_batch_size=max(1, int(data.get("max_batch_size", 20))),
            app_token=str(data.get("app_token", "") or "").strip(),
        )


@dataclass
class SyncTarget:
    user_id: str
    calendar_id: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncTarget":
        return cls(
            user_id=str(data.get("user_id", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
        )


@dataclass
class SyncConfig:
    window_days: int = 90
    interval_seconds: int = 300
    timeout_seconds: int = 0
    lock_ttl_seconds: int = 900
    batch_size: int = 20
    prune_missing: bool = True
    scheduler_enabled: bool = False
    targets: list[SyncTarget] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        targets: list[SyncTarget] = []
        for item in data.get("targets", []) or []:
            if not isinstance(item, dict):
                continue
            target = SyncTarget.from_dict(item)
            if target.user_id and target.calendar_id:
                targets.append(target)
        return cls(
            window_days=max(1, int(data.get("window_days", 90))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timeout_seconds=max(0, int(data.get("timeout_seconds", 0))),
            lock_ttl_seconds=max(60, int(data.get("lock_ttl_seconds", 900))),
            batch_size=max(1, int(data.get("batch_size", 20))),
            prune_missing=bool(data.get("prune_missing", True)),
            scheduler_enabled=bool(data.get("scheduler_enabled", False)),
            targets=targets,
        )


@dataclass
class RetryConfig:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    rate_limit_retries: int = 1
    max_retry_after_seconds: float = 120.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryConfig":
        data = data or {}
        return cls(
            max_retries=max(0, int(data.get("max_retries", 2))),
            backoff_seconds=max(0.0, float(data.get("backoff_seconds", 0.5))),
            max_backoff_seconds=max(0.0, float(data.get("max_backoff_seconds", 8.0))),
            rate_limit_retries=max(0, int(data.get("rate_limit_retries", 1))),
            max_retry_after_seconds=max(0.0, float(data.get("max_retry_after_seconds", 120.0))),
        )


@dataclass
class ConflictPolicyConfig:
    recommendation: str = "prefer_local"
    auto_resolve: str = "off"
    trivial_fields: list[str] = field(default_factory=lambda: list(DEFAULT_TRIVIAL_FIELDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConflictPolicyConfig":
        data = data or {}
        recommendation = str(data.get("recommendation", "prefer_local")).strip().lower()
        if recommendation not in {"prefer_local", "prefer_remote"}:
            recommendation = "prefer_local"
        auto_resolve = str(data.get("auto_resolve", "off")).strip().lower()
        if auto_resolve not in {"off", "recommended", "use_local", "use_remote"}:
            auto_resolve = "off"
        raw_fields = data.get("trivial_fields", DEFAULT_TRIVIAL_FIELDS)
        if not isinstance(raw_fields, list):
            raw_fields = DEFAULT_TRIVIAL_FIELDS
        trivial = [str(x).strip() for x in raw_fields if str(x).strip() in CONTENT_FIELDS]
        return cls(recommendation=recommendation, auto_resolve=auto_resolve, trivial_fields=trivial)


@dataclass
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    conflicts: ConflictPolicyConfig = field(default_factory=ConflictPolicyConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            provider=ProviderConfig.from_dict(data.get("provider")),
            sync=SyncConfig.from_dict(data.get("sync")),
            retry=RetryConfig.from_dict(data.get("retry")),
            conflicts=ConflictPolicyConfig.from_dict(data.get("conflicts")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Attendee:
    email: str
    name: str = ""
    response_status: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attendee":
        return cls(
            email=str(data.get("email", "") or "").strip(),
            name=str(data.get("name", "") or "").strip(),
            response_status=str(data.get("response_status", "none") or "none").strip(),
        )


@dataclass
class CalendarEvent:
    user_id: str
    calendar_id: str
    id: str = ""
    remote_id: str | None = None
    subject: str = ""
    body: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    time_zone: str = "UTC"
    attendees: list[Attendee] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    etag: str = ""
    remote_fingerprint: str = ""
    last_modified_remote: datetime | None = None
    last_modified_local: datetime | None = None
    locally_modified: bool = False
    remotely_modified: bool = False
    last_synced_at: datetime | None = None

    def content(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "body": self.body,
            "location": self.location,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "is_all_day": bool(self.is_all_day),
            "attendees": [attendee.to_dict() for attendee in self.attendees],
            "categories": sorted(set(self.categories)),
        }

    def apply_content(self, content: dict[str, Any]) -> None:
        for key in CONTENT_FIELDS:
            if key not in content:
                continue
            value = content[key]
            if key in {"start", "end"}:
                setattr(self, key, parse_iso_datetime(value))
            elif key == "is_all_day":
                self.is_all_day = bool(value)
            elif key == "attendees":
                self.attendees = [
                    item if isinstance(item, Attendee) else Attendee.from_dict(item) for item in (value or [])
                ]
            elif key == "categories":
                self.categories = sorted({str(x) for x in (value or []) if str(x).strip()})
            else:
                setattr(self, key, "" if value is None else str(value))

    def fingerprint(self) -> str:
        return content_fingerprint(self.content())

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["attendees"] = [attendee.to_dict() for attendee in self.attendees]
        for key in ("start", "end", "last_modified_remote", "last_modified_local", "last_synced_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload

    def clone(self) -> "CalendarEvent":
        copied = CalendarEvent(user_id=self.user_id, calendar_id=self.calendar_id)
        for key, value in self.__dict__.items():
            if key == "attendees":
                value = [Attendee(**attendee.to_dict()) for attendee in value]
            elif key == "categories":
                value = list(value)
            setattr(copied, key, value)
        return copied

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


def content_fingerprint(content: dict[str, Any]) -> str:
    canonical = json.dumps(content, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()  # nosec B324


@dataclass
class SyncState:
    user_id: str
    calendar_id: str
    delta_token: str | None = None
    last_sync_time: datetime | None = None
    last_full_sync: datetime | None = None
    last_delta_sync: datetime | None = None
    status: str = STATUS_PENDING
    started_at: datetime | None = None
    last_error: str = ""
    total_events: int = 0
    processed_events: int = 0
    synced_events: int = 0
    conflicted_events: int = 0
    failed_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("last_sync_time", "last_full_sync", "last_delta_sync", "started_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        payload["has_delta_token"] = bool(self.delta_token)
        payload.pop("delta_token", None)
        return payload


@dataclass
class SyncConflict:
    event_id: str
    user_id: str
    calendar_id: str
    type: str
    fields: list[str]
    local_version: dict[str, Any]
    remote_version: dict[str, Any] | None
    id: str = ""
    remote_etag: str = ""
    resolution: str = RESOLUTION_PENDING
    recommended_resolution: str = RESOLUTION_USE_LOCAL
    auto_resolvable: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @property
    def remote_deleted(self) -> bool:
        return self.remote_version is None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("created_at", "updated_at", "resolved_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        payload["is_open"] = self.is_open
        return payload


@dataclass
class SyncError:
    remote_id: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    mode: str
    user_id: str
    calendar_id: str
    trigger: str = "manual"
    message: str = ""
    duration_ms: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicted: int = 0
    unchanged: int = 0
    failed: int = 0
    pushed: int = 0
    auto_resolved: int = 0
    errors: list[SyncError] = field(default_factory=list)
    conflict_ids: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.deleted + self.conflicted + self.unchanged + self.failed

    @property
    def synced(self) -> int:
        return self.created + self.updated + self.deleted + self.pushed + self.auto_resolved

    def record_error(self, remote_id: str, message: str) -> None:
        self.failed += 1
        self.errors.append(SyncError(remote_id=remote_id, message=message))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["errors"] = [error.to_dict() for error in self.errors]
        payload["run_at"] = serialize_datetime(self.run_at)
        payload["processed"] = self.processed
        return payload


@dataclass
class DeltaSyncResult(SyncResult):
    updated_events: list[str] = field(default_factory=list)
    deleted_events: list[str] = field(default_factory=list)
    new_delta_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.pop("new_delta_token", None)
        payload["delta_token_advanced"] = bool(self.new_delta_token) and self.status == STATUS_COMPLETED
        return payload


@dataclass
class BatchSyncResult:
    calendar_id: str
    batch_calls: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    results: dict[str, SyncResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "batch_calls": self.batch_calls,
            "batch_sizes": list(self.batch_sizes),
            "results": {user_id: result.to_dict() for user_id, result in self.results.items()},
        }
