from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from focuscal.errors import MergeValidationError
from focuscal.models import CONTENT_FIELDS, Attendee, CalendarEvent, SyncConflict, parse_iso_datetime


ALLOWED_FIELDS = set(CONTENT_FIELDS)
APPLY_FIELD_ORDER = CONTENT_FIELDS


@dataclass
class ReconcileOutcome:
    applied: bool
    reason: str
    event: CalendarEvent
    blocked_fields: list[str]


def _normalize_value(field: str, value: Any) -> Any:
    if field in {"start", "end"}:
        return parse_iso_datetime(value)
    if field == "is_all_day":
        return bool(value)
    if field == "attendees":
        attendees = []
        for item in value or []:
            attendee = item if isinstance(item, Attendee) else Attendee.from_dict(dict(item))
            if attendee.email:
                attendees.append(attendee)
        return attendees
    if field == "categories":
        return sorted({str(x).strip() for x in value or [] if str(x).strip()})
    return "" if value is None else str(value)


def apply_change(
    *,
    current_event: CalendarEvent,
    change: dict[str, Any],
    editable_fields: Iterable[str] | None = None,
) -> ReconcileOutcome:
    """Apply a field-level edit to a copy of ``current_event``."""
    parsed: dict[str, Any] = {}
    for field in APPLY_FIELD_ORDER:
        if field not in change:
            continue
        try:
            parsed[field] = _normalize_value(field, change.get(field))
        except (TypeError, ValueError):
            reason = "invalid_datetime" if field in {"start", "end"} else f"invalid_{field}"
            return ReconcileOutcome(applied=False, reason=reason, event=current_event, blocked_fields=[])

    updated = current_event.clone()
    editable_set = {str(field).strip() for field in editable_fields or APPLY_FIELD_ORDER if str(field).strip()}
    applicable_fields = ALLOWED_FIELDS & editable_set
    blocked_fields = sorted(field for field in change if field not in applicable_fields)
    applied_any = False

    for field in APPLY_FIELD_ORDER:
        if field not in applicable_fields or field not in parsed:
            continue
        new_value = parsed[field]
        if field in {"start", "end"} and new_value is None:
            continue
        if getattr(updated, field) != new_value:
            setattr(updated, field, new_value)
            applied_any = True

    if updated.start is not None and updated.end is not None and updated.end < updated.start:
        return ReconcileOutcome(applied=False, reason="invalid_range", event=current_event, blocked_fields=[])

    return ReconcileOutcome(
        applied=applied_any,
        reason="applied" if applied_any else "no_changes",
        event=updated,
        blocked_fields=blocked_fields,
    )


def merged_event(conflict: SyncConflict, current_event: CalendarEvent, merged: dict[str, Any] | None) -> CalendarEvent:
    """Build the event a MERGE resolution would store.

    Every conflicting field has to be set explicitly so neither side's value
    comes back by omission. Non-conflicting fields default to the local copy.
    """
    if not isinstance(merged, dict) or not merged:
        raise MergeValidationError("MERGE requires a merged payload")
    unknown = sorted(set(merged) - ALLOWED_FIELDS)
    if unknown:
        raise MergeValidationError(f"Unknown fields in merged payload: {', '.join(unknown)}")
    missing = [field for field in conflict.fields if field not in merged]
    if missing:
        raise MergeValidationError(f"Merged payload must set conflicting fields explicitly: {', '.join(missing)}")

    base = current_event.clone()
    base.apply_content(conflict.local_version)
    outcome = apply_change(current_event=base, change=merged)
    if outcome.reason.startswith("invalid"):
        raise MergeValidationError(f"Merged payload rejected: {outcome.reason}")
    return outcome.event
