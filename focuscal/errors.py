from __future__ import annotations


class FocusCalError(Exception):
    """Base class for errors raised by focuscal."""


class ProviderError(FocusCalError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ProviderError):
    """Credentials are missing, expired or rejected. Never retried by the engine."""


class RateLimitError(ProviderError):
    def __init__(self, message: str, *, retry_after: float | None = None, status_code: int | None = 429) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    pass


class DeltaTokenExpiredError(ProviderError):
    pass


class MalformedEventError(ProviderError):
    def __init__(self, message: str, *, remote_id: str = "") -> None:
        super().__init__(message)
        self.remote_id = remote_id


class SyncInProgressError(FocusCalError):
    pass


class SyncCancelledError(FocusCalError):
    pass


class SyncLeaseLostError(SyncCancelledError):
    """Another pass took over the sync state, or the pass was cancelled through the store."""


class DeltaTokenMissingError(FocusCalError):
    pass


class ConflictNotFoundError(FocusCalError):
    pass


class ConflictAlreadyResolvedError(FocusCalError):
    pass


class MergeValidationError(FocusCalError):
    pass


class EventNotFoundError(FocusCalError):
    pass
