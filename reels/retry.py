"""One retry policy for downloads, lock claims, uploads, upstream calls and encodes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry an operation up to `max_attempts` times.

    `delays[i]` is the pause after failed attempt i+1; the last delay is reused
    when there are more attempts than delays. Only exceptions matching
    `retry_on` are retried, and `should_retry` can veto per exception
    (e.g. only retry an EncodeError whose kind is transient). Anything in
    `give_up_on` is re-raised immediately.
    """

    max_attempts: int = 3
    delays: tuple[float, ...] = (2.0, 5.0, 10.0)
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    give_up_on: tuple[type[BaseException], ...] = ()
    should_retry: Callable[[BaseException], bool] | None = None
    sleep: Callable[[float], Any] = field(default=time.sleep, compare=False, repr=False)

    @classmethod
    def fixed(cls, attempts: int, delay: float, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=attempts, delays=(delay,), **kwargs)

    @classmethod
    def exponential(cls, attempts: int, base: float = 1.0, cap: float = 30.0, **kwargs) -> "RetryPolicy":
        delays = tuple(min(base * (2 ** i), cap) for i in range(max(1, attempts - 1)))
        return cls(max_attempts=attempts, delays=delays, **kwargs)

    def delay_for(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]

    def _is_retryable(self, exc: BaseException) -> bool:
        if self.give_up_on and isinstance(exc, self.give_up_on):
            return False
        if not isinstance(exc, self.retry_on):
            return False
        if self.should_retry is not None:
            return bool(self.should_retry(exc))
        return True

    def call(self, fn: Callable[..., T], *args, description: str = "operation", **kwargs) -> T:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= attempts or not self._is_retryable(exc):
                    if attempt > 1:
                        logger.warning("%s failed after %d attempts: %s", description, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.debug(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    description, attempt, attempts, delay, exc,
                )
                if delay > 0:
                    self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
