"""Bounded fixed-delay retries around one task attempt."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from .errors import AttemptError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_everything(error: BaseException) -> bool:
    return True


@dataclass
class RetryOutcome(Generic[T]):
    value: T
    attempts: int


class RetryController:
    """Call ``fn`` until it succeeds or ``max_retries`` calls have been made.

    Only ``AttemptError`` subclasses are retried; anything else propagates
    immediately. ``is_retryable`` can narrow that further, for example to
    stop retrying engine errors that are known to be terminal. The default
    treats every attempt error as retryable.

    Args:
        max_retries: Total call budget, including the first call.
        delay: Fixed seconds slept between calls.
        on_retry: Optional callback ``(attempt, max_retries, error)`` fired
            after each failed call that will be retried.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        max_retries: int = 3,
        delay: float = 5.0,
        *,
        is_retryable: Callable[[BaseException], bool] = retry_everything,
        on_retry: Optional[Callable[[int, int, AttemptError], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.delay = max(0.0, float(delay))
        self.is_retryable = is_retryable
        self.on_retry = on_retry
        self.sleep = sleep

    def attempt(self, fn: Callable[[int], T]) -> RetryOutcome[T]:
        """Run ``fn(attempt_number)``; raise ``RetryExhausted`` when the budget is spent."""
        last_error: AttemptError | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return RetryOutcome(value=fn(attempt), attempts=attempt)
            except AttemptError as err:
                last_error = err
                logger.warning("%s (attempt %d/%d)", err, attempt, self.max_retries)
                if not self.is_retryable(err):
                    raise RetryExhausted(attempt, err) from err
                if attempt >= self.max_retries:
                    break
                if self.on_retry:
                    self.on_retry(attempt, self.max_retries, err)
                logger.info("Retrying in %ss...", _format_delay(self.delay))
                self.sleep(self.delay)
        raise RetryExhausted(self.max_retries, last_error)


def _format_delay(delay: float) -> str:
    return str(int(delay)) if float(delay).is_integer() else f"{delay:g}"
