import unittest
from unittest import mock

from focuscal.errors import AuthError, ProviderError, RateLimitError, TransientProviderError
from focuscal.models import RetryConfig
from focuscal.retry import RetryPolicy


class RetryPolicyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.policy = RetryPolicy(
            RetryConfig(max_retries=2, backoff_seconds=0.5, max_backoff_seconds=8.0, max_retry_after_seconds=30),
            sleep=self.sleeps.append,
        )

    def test_rate_limit_retried_once_with_retry_after(self) -> None:
        func = mock.Mock(side_effect=[RateLimitError("429", retry_after=3), "ok"])
        self.assertEqual(self.policy.call(func), "ok")
        self.assertEqual(self.sleeps, [3.0])

    def test_second_rate_limit_propagates(self) -> None:
        func = mock.Mock(side_effect=[RateLimitError("429", retry_after=1), RateLimitError("429", retry_after=1)])
        with self.assertRaises(RateLimitError):
            self.policy.call(func)
        self.assertEqual(func.call_count, 2)

    def test_retry_after_is_capped(self) -> None:
        func = mock.Mock(side_effect=[RateLimitError("429", retry_after=600), "ok"])
        self.policy.call(func)
        self.assertEqual(self.sleeps, [30.0])

    def test_transient_errors_back_off_exponentially(self) -> None:
        func = mock.Mock(side_effect=[TransientProviderError("503"), TransientProviderError("503"), "ok"])
        self.assertEqual(self.policy.call(func), "ok")
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_transient_errors_exhaust(self) -> None:
        func = mock.Mock(side_effect=TransientProviderError("503"))
        with self.assertRaises(TransientProviderError):
            self.policy.call(func)
        self.assertEqual(func.call_count, 3)

    def test_rate_limit_and_transient_budgets_are_separate(self) -> None:
        func = mock.Mock(side_effect=[RateLimitError("429", retry_after=2), TransientProviderError("503"), "ok"])
        self.assertEqual(self.policy.call(func), "ok")
        self.assertEqual(self.sleeps, [2.0, 1.0])

    def test_rate_limit_without_hint_waits_base_backoff(self) -> None:
        func = mock.Mock(side_effect=[RateLimitError("429"), "ok"])
        self.policy.call(func)
        self.assertEqual(self.sleeps, [0.5])

    def test_auth_and_client_errors_are_not_retried(self) -> None:
        for exc in (AuthError("401", status_code=401), ProviderError("400", status_code=400)):
            func = mock.Mock(side_effect=exc)
            with self.assertRaises(type(exc)):
                self.policy.call(func)
            self.assertEqual(func.call_count, 1)
        self.assertEqual(self.sleeps, [])


if __name__ == "__main__":
    unittest.main()
