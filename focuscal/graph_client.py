from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from focuscal.errors import MalformedEventError, ProviderError
from focuscal.models import Attendee, CalendarEvent, parse_iso_datetime
from focuscal.provider_base import (
    BatchItem,
    CalendarProviderClient,
    DeltaPage,
    EventPage,
    ListRequest,
    Removal,
    error_for_status,
)


DEFAULT_CALENDAR_IDS = {"", "default", "primary"}
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def _graph_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def _parse_graph_datetime(value: str, time_zone: str | None) -> datetime:
    text = _FRACTION_PATTERN.sub(r"\1", str(value).strip())
    if text.endswith("Z"):
        return parse_iso_datetime(text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        return parsed
    zone_name = str(time_zone or "UTC").strip()
    if zone_name.upper() in {"UTC", "Z", ""}:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.replace(tzinfo=ZoneInfo(zone_name))
    except (ZoneInfoNotFoundError, ValueError):
        # Windows zone names are not in the IANA database; requests ask for UTC anyway.
        return parsed.replace(tzinfo=timezone.utc)


def parse_graph_event(item: dict[str, Any], user_id: str, calendar_id: str) -> CalendarEvent:
    remote_id = str(item.get("id") or "").strip()
    if not remote_id:
        raise MalformedEventError("Graph event without id")
    start = item.get("start") or {}
    end = item.get("end") or {}
    if not start.get("dateTime") or not end.get("dateTime"):
        raise MalformedEventError(f"Graph event {remote_id} is missing start/end", remote_id=remote_id)
    try:
        start_dt = _parse_graph_datetime(start["dateTime"], start.get("timeZone"))
        end_dt = _parse_graph_datetime(end["dateTime"], end.get("timeZone"))
        last_modified = parse_iso_datetime(item.get("lastModifiedDateTime"))
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Graph event {remote_id} has invalid datetime: {exc}", remote_id=remote_id) from exc

    attendees: list[Attendee] = []
    for raw in item.get("attendees") or []:
        email = (raw.get("emailAddress") or {}) if isinstance(raw, dict) else {}
        address = str(email.get("address") or "").strip()
        if not address:
            continue
        attendees.append(
            Attendee(
                email=address,
                name=str(email.get("name") or "").strip(),
                response_status=str((raw.get("status") or {}).get("response") or "none"),
            )
        )

    return CalendarEvent(
        user_id=user_id,
        calendar_id=calendar_id,
        remote_id=remote_id,
        subject=str(item.get("subject") or ""),
        body=str((item.get("body") or {}).get("content") or ""),
        location=str((item.get("location") or {}).get("displayName") or ""),
        start=start_dt,
        end=end_dt,
        is_all_day=bool(item.get("isAllDay", False)),
        time_zone=str(start.get("timeZone") or "UTC"),
        attendees=attendees,
        categories=sorted({str(x) for x in item.get("categories") or [] if str(x).strip()}),
        etag=str(item.get("@odata.etag") or item.get("changeKey") or ""),
        last_modified_remote=last_modified,
    )


def to_graph_payload(event: CalendarEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "subject": event.subject,
        "body": {"contentType": "text", "content": event.body or ""},
        "location": {"displayName": event.location or ""},
        "isAllDay": bool(event.is_all_day),
        "categories": sorted(set(event.categories)),
        "attendees": [
            {"emailAddress": {"address": a.email, "name": a.name}, "type": "required"} for a in event.attendees
        ],
    }
    if event.start is not None:
        payload["start"] = {"dateTime": _graph_time(event.start), "timeZone": "UTC"}
    if event.end is not None:
        payload["end"] = {"dateTime": _graph_time(event.end), "timeZone": "UTC"}
    return payload


class GraphCalendarClient(CalendarProviderClient):
    """Microsoft Graph v1.0 calendar client.

    Full listings use ``calendarView/delta`` so the end of a listing yields a
    delta link; that link is the delta token handed back to the engine.
    """

    name = "microsoft"
    default_base_url = "https://graph.microsoft.com/v1.0"
    max_batch_size = 20

    def _prefer_header(self) -> dict[str, str]:
        return {
            "Prefer": (
                'outlook.timezone="UTC", outlook.body-content-type="text", '
                f"odata.maxpagesize={self.config.page_size}"
            )
        }

    def _calendar_path(self, calendar_id: str, user_id: str | None = None) -> str:
        owner = "/me" if user_id is None else f"/users/{quote(user_id, safe='')}"
        if calendar_id in DEFAULT_CALENDAR_IDS:
            return owner
        return f"{owner}/calendars/{quote(calendar_id, safe='')}"

    def _absolute(self, link: str) -> str:
        if not link.startswith("https://") and not link.startswith("http://"):
            raise ProviderError(f"Unexpected Graph link: {link[:80]}")
        return link

    def list_events_page(
        self,
        user_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        cursor: str | None = None,
    ) -> EventPage:
        token = self.token_provider.get_access_token(user_id)
        if cursor:
            payload = self._request("GET", self._absolute(cursor), token=token, headers=self._prefer_header())
        else:
            payload = self._request(
                "GET",
                f"{self.base_url}{self._calendar_path(calendar_id)}/calendarView/delta",
                token=token,
                params={"startDateTime": _graph_time(time_min) + "Z", "endDateTime": _graph_time(time_max) + "Z"},
                headers=self._prefer_header(),
            )
        page = EventPage(
            next_cursor=payload.get("@odata.nextLink"),
            delta_token=payload.get("@odata.deltaLink"),
        )
        for item in payload.get("value") or []:
            if not isinstance(item, dict) or "@removed" in item:
                continue
            try:
                page.events.append(parse_graph_event(item, user_id, calendar_id))
            except MalformedEventError as exc:
                page.malformed.append(exc)
        return page

    def get_delta_page(self, user_id: str, calendar_id: str, cursor: str) -> DeltaPage:
        token = self.token_provider.get_access_token(user_id)
        payload = self._request("GET", self._absolute(cursor), token=token, headers=self._prefer_header())
        page = DeltaPage(
            next_cursor=payload.get("@odata.nextLink"),
            delta_token=payload.get("@odata.deltaLink"),
        )
        for item in payload.get("value") or []:
            if not isinstance(item, dict):
                continue
            removed = item.get("@removed")
            if removed is not None:
                remote_id = str(item.get("id") or "").strip()
                if remote_id:
                    reason = str((removed or {}).get("reason") or "deleted")
                    page.removals.append(Removal(remote_id=remote_id, reason=reason))
                continue
            try:
                page.upserts.append(parse_graph_event(item, user_id, calendar_id))
            except MalformedEventError as exc:
                page.malformed.append(exc)
        return page

    def create_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        token = self.token_provider.get_access_token(user_id)
        payload = self._request(
            "POST",
            f"{self.base_url}{self._calendar_path(calendar_id)}/events",
            token=token,
            json_body=to_graph_payload(event),
            headers=self._prefer_header(),
        )
        return parse_graph_event(payload, user_id, calendar_id)

    def update_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        if not event.remote_id:
            raise ValueError("update_event requires a remote id")
        token = self.token_provider.get_access_token(user_id)
        payload = self._request(
            "PATCH",
            f"{self.base_url}/me/events/{quote(event.remote_id, safe='')}",
            token=token,
            json_body=to_graph_payload(event),
            headers=self._prefer_header(),
        )
        return parse_graph_event(payload, user_id, calendar_id)

    def _batch_url(self, request: ListRequest) -> str:
        query = urlencode(
            {
                "startDateTime": _graph_time(request.time_min) + "Z",
                "endDateTime": _graph_time(request.time_max) + "Z",
                "$top": str(self.config.page_size),
            }
        )
        return f"{self._calendar_path(request.calendar_id, user_id=request.user_id)}/calendarView?{query}"

    def batch_list_events(self, requests_: list[ListRequest]) -> list[BatchItem]:
        if len(requests_) > self.max_batch_size:
            raise ValueError(f"batch of {len(requests_)} exceeds Graph cap of {self.max_batch_size}")
        if not requests_:
            return []
        token = self.token_provider.get_application_token()
        body = {
            "requests": [
                {
                    "id": str(index),
                    "method": "GET",
                    "url": self._batch_url(request),
                    "headers": {"Prefer": 'outlook.timezone="UTC", outlook.body-content-type="text"'},
                }
                for index, request in enumerate(requests_)
            ]
        }
        payload = self._request("POST", f"{self.base_url}/$batch", token=token, json_body=body)
        responses = {str(item.get("id")): item for item in payload.get("responses") or [] if isinstance(item, dict)}

        items: list[BatchItem] = []
        for index, request in enumerate(requests_):
            item = BatchItem(user_id=request.user_id)
            response = responses.get(str(index))
            if response is None:
                item.error = ProviderError(f"Graph batch response missing for user {request.user_id}")
                items.append(item)
                continue
            status = int(response.get("status") or 0)
            response_body = response.get("body") or {}
            if status >= 400 or status == 0:
                message = f"Graph batch item for user {request.user_id}: HTTP {status}"
                item.error = error_for_status(status, message, response.get("headers") or {})
                items.append(item)
                continue
            try:
                while True:
                    for raw in response_body.get("value") or []:
                        if not isinstance(raw, dict) or "@removed" in raw:
                            continue
                        try:
                            item.events.append(parse_graph_event(raw, request.user_id, request.calendar_id))
                        except MalformedEventError as exc:
                            item.malformed.append(exc)
                    next_link = response_body.get("@odata.nextLink")
                    if not next_link:
                        break
                    response_body = self._request(
                        "GET", self._absolute(next_link), token=token, headers=self._prefer_header()
                    )
            except ProviderError as exc:
                item.error = exc
                item.events = []
                item.malformed = []
            items.append(item)
        return items
