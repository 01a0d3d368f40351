from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from focuscal.errors import AuthError
from focuscal.models import ProviderConfig

if TYPE_CHECKING:
    from focuscal.state_store import StateStore


class TokenProvider(ABC):
    @abstractmethod
    def get_access_token(self, user_id: str) -> str:
        """Return a bearer token for ``user_id`` or raise ``AuthError``."""

    @abstractmethod
    def get_application_token(self) -> str:
        """Return the application (daemon) token used for cross-user batch calls."""


class StoredTokenProvider(TokenProvider):
    """Serves tokens registered by the OAuth layer through the admin API."""

    def __init__(self, state_store: "StateStore", config: ProviderConfig, skew_seconds: int = 60) -> None:
        self.state_store = state_store
        self.config = config
        self.skew = timedelta(seconds=max(0, skew_seconds))

    def get_access_token(self, user_id: str) -> str:
        record = self.state_store.get_provider_token(user_id)
        if record is None or not record["access_token"]:
            raise AuthError(f"No provider token registered for user {user_id}")
        expires_at = record["expires_at"]
        if expires_at is not None and expires_at - self.skew <= datetime.now(timezone.utc):
            raise AuthError(f"Provider token for user {user_id} has expired", status_code=401)
        return str(record["access_token"])

    def get_application_token(self) -> str:
        if not self.config.app_token:
            raise AuthError("provider.app_token is not configured")
        return self.config.app_token

