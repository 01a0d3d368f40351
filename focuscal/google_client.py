from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from typing import Any
from urllib.parse import quote

from focuscal.errors import MalformedEventError, ProviderError
from focuscal.models import Attendee, CalendarEvent, date_to_datetime, parse_iso_datetime, serialize_datetime
from focuscal.provider_base import CalendarProviderClient, DeltaPage, EventPage, Removal


CATEGORIES_PROPERTY = "focuscalCategories"


def _encode_cursor(sync_token: str, page_token: str) -> str:
    return json.dumps({"syncToken": sync_token, "pageToken": page_token}, separators=(",", ":"))


def _decode_cursor(cursor: str) -> tuple[str, str]:
    """Split an opaque cursor into (syncToken, pageToken)."""
    text = str(cursor or "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ProviderError("Invalid Google delta cursor") from exc
        return str(data.get("syncToken") or ""), str(data.get("pageToken") or "")
    return text, ""


def _parse_google_time(value: dict[str, Any]) -> tuple[datetime | None, bool]:
    if value.get("dateTime"):
        return parse_iso_datetime(str(value["dateTime"])), False
    if value.get("date"):
        return date_to_datetime(date.fromisoformat(str(value["date"]))), True
    return None, False


def parse_google_event(item: dict[str, Any], user_id: str, calendar_id: str) -> CalendarEvent:
    remote_id = str(item.get("id") or "").strip()
    if not remote_id:
        raise MalformedEventError("Google event without id")
    try:
        start, all_day = _parse_google_time(item.get("start") or {})
        end, _ = _parse_google_time(item.get("end") or {})
        last_modified = parse_iso_datetime(item.get("updated"))
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Google event {remote_id} has invalid datetime: {exc}", remote_id=remote_id) from exc
    if start is None or end is None:
        raise MalformedEventError(f"Google event {remote_id} is missing start/end", remote_id=remote_id)

    attendees = [
        Attendee(
            email=str(raw.get("email") or "").strip(),
            name=str(raw.get("displayName") or "").strip(),
            response_status=str(raw.get("responseStatus") or "none"),
        )
        for raw in item.get("attendees") or []
        if isinstance(raw, dict) and str(raw.get("email") or "").strip()
    ]
    private = ((item.get("extendedProperties") or {}).get("private") or {})
    raw_categories = str(private.get(CATEGORIES_PROPERTY) or "")
    categories = sorted({x.strip() for x in raw_categories.split(",") if x.strip()})

    return CalendarEvent(
        user_id=user_id,
        calendar_id=calendar_id,
        remote_id=remote_id,
        subject=str(item.get("summary") or ""),
        body=str(item.get("description") or ""),
        location=str(item.get("location") or ""),
        start=start,
        end=end,
        is_all_day=all_day,
        time_zone=str((item.get("start") or {}).get("timeZone") or "UTC"),
        attendees=attendees,
        categories=categories,
        etag=str(item.get("etag") or ""),
        last_modified_remote=last_modified,
    )


def to_google_payload(event: CalendarEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "summary": event.subject,
        "description": event.body or "",
        "location": event.location or "",
        "attendees": [
            {"email": a.email, "displayName": a.name, "responseStatus": a.response_status or "needsAction"}
            for a in event.attendees
        ],
        "extendedProperties": {"private": {CATEGORIES_PROPERTY: ",".join(sorted(set(event.categories)))}},
    }
    if event.is_all_day and event.start is not None:
        end = event.end or (event.start + timedelta(days=1))
        payload["start"] = {"date": event.start.date().isoformat()}
        payload["end"] = {"date": end.date().isoformat()}
    else:
        if event.start is not None:
            payload["start"] = {"dateTime": serialize_datetime(event.start), "timeZone": "UTC"}
        if event.end is not None:
            payload["end"] = {"dateTime": serialize_datetime(event.end), "timeZone": "UTC"}
    return payload


class GoogleCalendarClient(CalendarProviderClient):
    """Google Calendar v3 client.

    Listings end with ``nextSyncToken`` which becomes the delta token. Delta
    pages carry cancelled events, which are reported as removals.
    """

    name = "google"
    default_base_url = "https://www.googleapis.com/calendar/v3"
    max_batch_size = 50

    def _events_url(self, calendar_id: str) -> str:
        calendar = calendar_id or "primary"
        if calendar == "default":
            calendar = "primary"
        return f"{self.base_url}/calendars/{quote(calendar, safe='')}/events"

    def list_events_page(
        self,
        user_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        cursor: str | None = None,
    ) -> EventPage:
        token = self.token_provider.get_access_token(user_id)
        params: dict[str, Any] = {
            "timeMin": serialize_datetime(time_min),
            "timeMax": serialize_datetime(time_max),
            "singleEvents": "true",
            "showDeleted": "false",
            "maxResults": self.config.page_size,
        }
        if cursor:
            params["pageToken"] = cursor
        payload = self._request("GET", self._events_url(calendar_id), token=token, params=params)
        page = EventPage(next_cursor=payload.get("nextPageToken"), delta_token=payload.get("nextSyncToken"))
        for item in payload.get("items") or []:
            if not isinstance(item, dict) or item.get("status") == "cancelled":
                continue
            try:
                page.events.append(parse_google_event(item, user_id, calendar_id))
            except MalformedEventError as exc:
                page.malformed.append(exc)
        return page

    def get_delta_page(self, user_id: str, calendar_id: str, cursor: str) -> DeltaPage:
        sync_token, page_token = _decode_cursor(cursor)
        if not sync_token:
            raise ProviderError("Google delta cursor is missing a sync token")
        token = self.token_provider.get_access_token(user_id)
        params: dict[str, Any] = {
            "syncToken": sync_token,
            "singleEvents": "true",
            "maxResults": self.config.page_size,
        }
        if page_token:
            params["pageToken"] = page_token
        payload = self._request("GET", self._events_url(calendar_id), token=token, params=params)
        next_page = payload.get("nextPageToken")
        page = DeltaPage(
            next_cursor=_encode_cursor(sync_token, next_page) if next_page else None,
            delta_token=payload.get("nextSyncToken"),
        )
        for item in payload.get("items") or []:
            if not isinstance(item, dict):
                continue
            if item.get("status") == "cancelled":
                remote_id = str(item.get("id") or "").strip()
                if remote_id:
                    page.removals.append(Removal(remote_id=remote_id, reason="deleted"))
                continue
            try:
                page.upserts.append(parse_google_event(item, user_id, calendar_id))
            except MalformedEventError as exc:
                page.malformed.append(exc)
        return page

    def create_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        token = self.token_provider.get_access_token(user_id)
        payload = self._request(
            "POST",
            self._events_url(calendar_id),
            token=token,
            json_body=to_google_payload(event),
        )
        return parse_google_event(payload, user_id, calendar_id)

    def update_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        if not event.remote_id:
            raise ValueError("update_event requires a remote id")
        token = self.token_provider.get_access_token(user_id)
        payload = self._request(
            "PATCH",
            f"{self._events_url(calendar_id)}/{quote(event.remote_id, safe='')}",
            token=token,
            json_body=to_google_payload(event),
        )
        return parse_google_event(payload, user_id, calendar_id)
