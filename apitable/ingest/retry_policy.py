from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class RetryPolicy:
    """
    Bounded retry with an optional transform applied before each retry.

    Attributes:
        max_attempts:  Total attempts, including the first.
        is_retryable:  Classifier; exceptions it rejects propagate at once.
        fallback:      Applied to the payload before every attempt after
                       the first (e.g. coerce all values to text).
        wait_seconds:  Fixed delay between attempts.
        sleep:         Injected for tests; defaults to tenacity's sleep.
    """

    max_attempts: int
    is_retryable: Callable[[BaseException], bool]
    fallback: Callable[[Any], Any] | None = None
    wait_seconds: float = 0.0
    sleep: Callable[[float], None] | None = None

    def run(self, fn: Callable[[T], R], payload: T) -> R:
        kwargs: dict[str, Any] = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.wait_seconds),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            **kwargs,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1 and self.fallback:
                    payload = self.fallback(payload)
                return fn(payload)
        raise AssertionError("unreachable: tenacity reraises on exhaustion")
