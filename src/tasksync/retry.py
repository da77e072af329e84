"""Centralized retry helpers.

``run_with_retries`` re-invokes a thunk while ``should_retry`` says the
raised exception is transient, sleeping between attempts according to a
``RetryPolicy``. Sleeping goes through a ``Clock`` so tests can substitute a
fake one and never wait for real.

The policy is deliberately plain: a bounded number of retries with a fixed
delay, no jitter. Rate-limit waits are handled by the tracker client, which
knows the provider's reset time.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from .logging import get_logger

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float: ...  # pragma: no cover - structural only

    def sleep(self, seconds: float) -> None: ...  # pragma: no cover


class SystemClock:
    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    delay_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay(self, attempt: int) -> float:  # noqa: ARG002 - fixed delay
        return max(0.0, self.delay_seconds)

    @classmethod
    def from_millis(cls, max_retries: int, retry_delay_ms: int | float) -> RetryPolicy:
        return cls(max_retries=max_retries, delay_seconds=float(retry_delay_ms) / 1000.0)


def run_with_retries(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException], bool],
    clock: Clock | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> T:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    ``on_retry(exc, attempt)`` fires before each sleep; the last exception is
    re-raised unchanged once the policy is exhausted.
    """
    policy = policy or RetryPolicy()
    clock = clock or SystemClock()
    attempts = policy.max_attempts
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            sleep_for = policy.delay(attempt)
            get_logger().warning(
                f"[retry] transient error, attempt {attempt}/{attempts}, sleeping {sleep_for:.2f}s",
                attempt=attempt,
                max_attempts=attempts,
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(exc, attempt)
            clock.sleep(sleep_for)
    raise RuntimeError("retry logic exited unexpectedly")  # pragma: no cover


__all__ = ["Clock", "SystemClock", "RetryPolicy", "run_with_retries"]
