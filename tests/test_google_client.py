import json
import unittest
from datetime import datetime, timezone
from unittest import mock

from focuscal.errors import ProviderError
from focuscal.google_client import GoogleCalendarClient, parse_google_event, to_google_payload
from focuscal.models import ProviderConfig
from fakes import StaticTokenProvider


def _response(payload: dict) -> mock.Mock:
    response = mock.Mock()
    response.status_code = 200
    response.ok = True
    response.headers = {}
    response.content = b"{}"
    response.json.return_value = payload
    return response


def _google_item(event_id: str = "g1", summary: str = "Standup") -> dict:
    return {
        "id": event_id,
        "status": "confirmed",
        "summary": summary,
        "description": "agenda",
        "location": "Room 1",
        "start": {"dateTime": "2026-03-02T10:00:00+01:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-03-02T10:15:00+01:00", "timeZone": "Europe/Berlin"},
        "attendees": [{"email": "bob@example.com", "displayName": "Bob", "responseStatus": "accepted"}],
        "extendedProperties": {"private": {"focuscalCategories": "Work,Deep"}},
        "etag": '"3181"',
        "updated": "2026-03-01T10:00:00.000Z",
    }


WINDOW = (datetime(2026, 3, 1, tzinfo=timezone.utc), datetime(2026, 3, 31, tzinfo=timezone.utc))


class GoogleParsingTests(unittest.TestCase):
    def test_parse_timed_event(self) -> None:
        event = parse_google_event(_google_item(), "alice", "primary")
        self.assertEqual(event.start, datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.categories, ["Deep", "Work"])
        self.assertEqual(event.time_zone, "Europe/Berlin")
        self.assertEqual(event.attendees[0].name, "Bob")

    def test_all_day_event_uses_dates(self) -> None:
        item = dict(_google_item(), start={"date": "2026-03-02"}, end={"date": "2026-03-03"})
        event = parse_google_event(item, "alice", "primary")
        self.assertTrue(event.is_all_day)
        payload = to_google_payload(event)
        self.assertEqual(payload["start"], {"date": "2026-03-02"})
        self.assertEqual(payload["end"], {"date": "2026-03-03"})
        self.assertEqual(payload["extendedProperties"]["private"]["focuscalCategories"], "Deep,Work")


class GoogleClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.client = GoogleCalendarClient(
            ProviderConfig(kind="google", page_size=25, max_batch_size=100),
            StaticTokenProvider({"alice": "tok-a"}),
            session=self.session,
        )

    def test_batch_cap_is_bounded_by_provider_maximum(self) -> None:
        self.assertEqual(self.client.max_batch_size, 50)

    def test_listing_passes_window_and_page_token(self) -> None:
        self.session.request.return_value = _response(
            {"items": [_google_item(), {"id": "g2", "status": "cancelled"}], "nextSyncToken": "sync-1"}
        )

        page = self.client.list_events_page("alice", "default", *WINDOW, cursor="page-2")

        method, url = self.session.request.call_args.args
        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(url, "https://www.googleapis.com/calendar/v3/calendars/primary/events")
        self.assertEqual(params["pageToken"], "page-2")
        self.assertEqual(params["singleEvents"], "true")
        self.assertEqual(params["maxResults"], 25)
        self.assertEqual([e.remote_id for e in page.events], ["g1"])
        self.assertEqual(page.delta_token, "sync-1")
        self.assertIsNone(page.next_cursor)

    def test_delta_pages_carry_sync_token_in_cursor(self) -> None:
        self.session.request.return_value = _response(
            {"items": [_google_item("g1", "Renamed"), {"id": "g2", "status": "cancelled"}], "nextPageToken": "p2"}
        )

        page = self.client.get_delta_page("alice", "primary", "sync-1")

        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["syncToken"], "sync-1")
        self.assertNotIn("pageToken", params)
        self.assertEqual([r.remote_id for r in page.removals], ["g2"])
        self.assertEqual(json.loads(page.next_cursor), {"syncToken": "sync-1", "pageToken": "p2"})
        self.assertIsNone(page.delta_token)

        self.session.request.return_value = _response({"items": [], "nextSyncToken": "sync-2"})
        last = self.client.get_delta_page("alice", "primary", page.next_cursor)
        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["pageToken"], "p2")
        self.assertEqual(last.delta_token, "sync-2")

    def test_invalid_cursor_is_rejected(self) -> None:
        with self.assertRaises(ProviderError):
            self.client.get_delta_page("alice", "primary", "{not json")
        with self.assertRaises(ProviderError):
            self.client.get_delta_page("alice", "primary", "")

    def test_create_posts_payload(self) -> None:
        event = parse_google_event(_google_item(), "alice", "primary")
        self.session.request.return_value = _response(_google_item("g9"))

        created = self.client.create_event("alice", "work@group.calendar.google.com", event)

        method, url = self.session.request.call_args.args
        self.assertEqual(method, "POST")
        self.assertEqual(
            url, "https://www.googleapis.com/calendar/v3/calendars/work%40group.calendar.google.com/events"
        )
        self.assertEqual(self.session.request.call_args.kwargs["json"]["summary"], "Standup")
        self.assertEqual(created.remote_id, "g9")


if __name__ == "__main__":
    unittest.main()
