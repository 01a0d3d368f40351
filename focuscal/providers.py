from __future__ import annotations

from focuscal.google_client import GoogleCalendarClient
from focuscal.graph_client import GraphCalendarClient
from focuscal.models import ProviderConfig
from focuscal.provider_base import CalendarProviderClient
from focuscal.token_provider import TokenProvider


PROVIDER_CLASSES: dict[str, type[CalendarProviderClient]] = {
    "microsoft": GraphCalendarClient,
    "google": GoogleCalendarClient,
}


def build_provider(config: ProviderConfig, token_provider: TokenProvider) -> CalendarProviderClient:
    try:
        provider_cls = PROVIDER_CLASSES[config.kind]
    except KeyError as exc:
        raise ValueError(f"Unsupported provider kind: {config.kind}") from exc
    return provider_cls(config, token_provider)
