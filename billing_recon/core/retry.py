from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from .settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.retry_max_attempts),
            backoff_seconds=max(0.0, settings.retry_backoff_seconds),
            backoff_max_seconds=max(0.0, settings.retry_backoff_max_seconds),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...],
    describe: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                describe,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            sleep(delay)
            attempt += 1
