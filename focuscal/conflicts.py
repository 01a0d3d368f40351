from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from focuscal.models import (
    CONFLICT_BOTH_MODIFIED,
    CONFLICT_LOCATION_MISMATCH,
    CONFLICT_TIME_MISMATCH,
    CONFLICT_TITLE,
    CONTENT_FIELDS,
    RESOLUTION_USE_LOCAL,
    RESOLUTION_USE_REMOTE,
    CalendarEvent,
    ConflictPolicyConfig,
    SyncConflict,
)


FIELD_CATEGORIES = {
    "subject": CONFLICT_TITLE,
    "start": CONFLICT_TIME_MISMATCH,
    "end": CONFLICT_TIME_MISMATCH,
    "is_all_day": CONFLICT_TIME_MISMATCH,
    "location": CONFLICT_LOCATION_MISMATCH,
}

ACTION_UNCHANGED = "unchanged"
ACTION_REFRESH = "refresh"
ACTION_UPDATE = "update"
ACTION_CONVERGED = "converged"
ACTION_CONFLICT = "conflict"


@dataclass
class ChangeOutcome:
    action: str
    fields: list[str]
    conflict_type: str | None = None


def diff_content(local: dict[str, Any], remote: dict[str, Any]) -> list[str]:
    return [name for name in CONTENT_FIELDS if local.get(name) != remote.get(name)]


def classify_conflict(fields: list[str]) -> str:
    if not fields:
        raise ValueError("cannot classify a conflict without differing fields")
    categories = {FIELD_CATEGORIES.get(name) for name in fields}
    if len(categories) == 1 and None not in categories:
        return categories.pop()
    return CONFLICT_BOTH_MODIFIED


def remote_changed(local: CalendarEvent, remote: CalendarEvent) -> bool:
    if local.etag and remote.etag:
        return local.etag != remote.etag
    return remote.fingerprint() != local.remote_fingerprint


def compare_versions(local: CalendarEvent, remote: CalendarEvent) -> ChangeOutcome:
    """Decide what a freshly fetched remote copy means for the cached event."""
    if not remote_changed(local, remote):
        return ChangeOutcome(ACTION_UNCHANGED, [])
    fields = diff_content(local.content(), remote.content())
    if not local.locally_modified:
        return ChangeOutcome(ACTION_UPDATE if fields else ACTION_REFRESH, fields)
    if not fields:
        return ChangeOutcome(ACTION_CONVERGED, [])
    return ChangeOutcome(ACTION_CONFLICT, fields, classify_conflict(fields))


def is_auto_resolvable(fields: list[str], policy: ConflictPolicyConfig) -> bool:
    trivial = set(policy.trivial_fields)
    return bool(fields) and all(name in trivial for name in fields)


def recommend_resolution(
    local: CalendarEvent,
    last_sync_time: datetime | None,
    policy: ConflictPolicyConfig,
) -> str:
    if policy.recommendation == "prefer_remote":
        return RESOLUTION_USE_REMOTE
    if not local.locally_modified:
        return RESOLUTION_USE_REMOTE
    if last_sync_time is None or local.last_modified_local is None:
        return RESOLUTION_USE_LOCAL
    if local.last_modified_local >= last_sync_time:
        return RESOLUTION_USE_LOCAL
    return RESOLUTION_USE_REMOTE


def auto_resolution(conflict: SyncConflict, policy: ConflictPolicyConfig) -> str | None:
    if not conflict.auto_resolvable or policy.auto_resolve == "off":
        return None
    if policy.auto_resolve == "use_local":
        return RESOLUTION_USE_LOCAL
    if policy.auto_resolve == "use_remote":
        return RESOLUTION_USE_REMOTE
    return conflict.recommended_resolution


def build_conflict(
    local: CalendarEvent,
    remote: CalendarEvent | None,
    *,
    fields: list[str],
    conflict_type: str,
    last_sync_time: datetime | None,
    policy: ConflictPolicyConfig,
    existing: SyncConflict | None = None,
) -> SyncConflict:
    """Create a conflict, or refresh ``existing`` in place for the same event."""
    recommended = recommend_resolution(local, last_sync_time, policy)
    conflict = existing or SyncConflict(
        event_id=local.id,
        user_id=local.user_id,
        calendar_id=local.calendar_id,
        type=conflict_type,
        fields=[],
        local_version={},
        remote_version=None,
    )
    conflict.type = conflict_type
    conflict.fields = list(fields)
    conflict.local_version = local.content()
    conflict.remote_version = remote.content() if remote is not None else None
    conflict.remote_etag = remote.etag if remote is not None else ""
    conflict.recommended_resolution = recommended
    conflict.auto_resolvable = remote is not None and is_auto_resolvable(fields, policy)
    return conflict


def conflict_matches_remote(conflict: SyncConflict, remote: CalendarEvent) -> bool:
    if conflict.remote_version is None:
        return False
    if conflict.remote_etag and remote.etag:
        return conflict.remote_etag == remote.etag
    return conflict.remote_version == remote.content()
