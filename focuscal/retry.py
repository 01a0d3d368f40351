from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, wait_exponential

from focuscal.errors import RateLimitError, TransientProviderError
from focuscal.models import RetryConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries a single provider request.

    Rate limiting (429) is retried ``rate_limit_retries`` times after the
    provider's Retry-After hint. Transient failures (5xx, timeouts) get
    exponential backoff up to ``max_retries`` extra attempts. Every other
    error, including ``AuthError``, propagates on the first occurrence.
    """

    def __init__(self, config: RetryConfig, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self._sleep = sleep
        self._backoff = wait_exponential(multiplier=config.backoff_seconds, max=config.max_backoff_seconds)

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError):
            delay = exc.retry_after if exc.retry_after is not None else self.config.backoff_seconds
            return min(max(0.0, float(delay)), self.config.max_retry_after_seconds)
        return self._backoff(retry_state)

    def call(self, func: Callable[[], T], *, description: str = "provider request") -> T:
        # Throttling and transient failures draw on separate budgets.
        attempts = {RateLimitError: 0, TransientProviderError: 0}

        def stop(retry_state: RetryCallState) -> bool:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            kind = RateLimitError if isinstance(exc, RateLimitError) else TransientProviderError
            attempts[kind] += 1
            budget = self.config.rate_limit_retries if kind is RateLimitError else self.config.max_retries
            return attempts[kind] > budget

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            if isinstance(exc, RateLimitError):
                logger.warning("%s throttled, retrying in %.1fs", description, delay)
            else:
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.1fs",
                    description,
                    exc,
                    attempts[TransientProviderError],
                    self.config.max_retries,
                    delay,
                )

        retrying = Retrying(
            retry=retry_if_exception_type((RateLimitError, TransientProviderError)),
            stop=stop,
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(func)
