from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import requests

from focuscal.errors import (
    AuthError,
    DeltaTokenExpiredError,
    MalformedEventError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from focuscal.models import CalendarEvent, ProviderConfig
from focuscal.token_provider import TokenProvider


logger = logging.getLogger(__name__)


@dataclass
class Removal:
    remote_id: str
    reason: str = "deleted"


@dataclass
class EventPage:
    events: list[CalendarEvent] = field(default_factory=list)
    malformed: list[MalformedEventError] = field(default_factory=list)
    next_cursor: str | None = None
    delta_token: str | None = None


@dataclass
class DeltaPage:
    upserts: list[CalendarEvent] = field(default_factory=list)
    removals: list[Removal] = field(default_factory=list)
    malformed: list[MalformedEventError] = field(default_factory=list)
    next_cursor: str | None = None
    delta_token: str | None = None


@dataclass
class ListRequest:
    user_id: str
    calendar_id: str
    time_min: datetime
    time_max: datetime


@dataclass
class BatchItem:
    user_id: str
    events: list[CalendarEvent] = field(default_factory=list)
    malformed: list[MalformedEventError] = field(default_factory=list)
    error: ProviderError | None = None


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    text = str(value).strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_for_status(status_code: int, message: str, headers: dict[str, Any] | None = None) -> ProviderError:
    headers = headers or {}
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429:
        retry_after = parse_retry_after(headers.get("Retry-After") or headers.get("retry-after"))
        return RateLimitError(message, retry_after=retry_after)
    if status_code == 410:
        return DeltaTokenExpiredError(message, status_code=status_code)
    if status_code >= 500:
        return TransientProviderError(message, status_code=status_code)
    return ProviderError(message, status_code=status_code)


class CalendarProviderClient(ABC):
    """Capability interface consumed by the sync engine.

    Each method issues at most one HTTP request so the engine can retry and
    cancel at single-request granularity. Cursors and delta tokens are opaque
    strings owned by the provider.
    """

    name = "provider"
    default_base_url = ""
    max_batch_size = 1

    def __init__(
        self,
        config: ProviderConfig,
        token_provider: TokenProvider,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.max_batch_size = max(1, min(int(config.max_batch_size), type(self).max_batch_size))

    def _request(
        self,
        method: str,
        url: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        request_headers.update(headers or {})
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=request_headers,
                timeout=self.config.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"{self.name} {method} {url}: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            message = f"{self.name} {method} {url}: HTTP {response.status_code}: {response.text[:300]}"
            raise error_for_status(response.status_code, message, dict(response.headers))
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON body for {method} {url}") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} returned a non-object body for {method} {url}")
        return payload

    @abstractmethod
    def list_events_page(
        self,
        user_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        cursor: str | None = None,
    ) -> EventPage: ...

    @abstractmethod
    def get_delta_page(self, user_id: str, calendar_id: str, cursor: str) -> DeltaPage: ...

    @abstractmethod
    def create_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent: ...

    @abstractmethod
    def update_event(self, user_id: str, calendar_id: str, event: CalendarEvent) -> CalendarEvent: ...

    def list_events(
        self,
        user_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> EventPage:
        """Collect every page of a listing into one page."""
        combined = EventPage()
        cursor: str | None = None
        while True:
            page = self.list_events_page(user_id, calendar_id, time_min, time_max, cursor)
            combined.events.extend(page.events)
            combined.malformed.extend(page.malformed)
            if not page.next_cursor:
                combined.delta_token = page.delta_token
                return combined
            cursor = page.next_cursor

    def batch_list_events(self, requests_: list[ListRequest]) -> list[BatchItem]:
        if len(requests_) > self.max_batch_size:
            raise ValueError(f"batch of {len(requests_)} exceeds {self.name} cap of {self.max_batch_size}")
        items: list[BatchItem] = []
        for request in requests_:
            try:
                page = self.list_events(request.user_id, request.calendar_id, request.time_min, request.time_max)
            except ProviderError as exc:
                items.append(BatchItem(user_id=request.user_id, error=exc))
                continue
            items.append(BatchItem(user_id=request.user_id, events=page.events, malformed=page.malformed))
        return items
