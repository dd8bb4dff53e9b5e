"""Bounded retry policy for upstream control-plane calls."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

from chargesync.errors import RateLimited, UpstreamTimeout, UpstreamUnavailable

_LOGGER = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """How many times to try a call, and which failures are worth retrying.

    Delay before attempt ``n`` (1-based, n > 1) is ``base_delay * 2 ** (n - 2)``.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (UpstreamTimeout, UpstreamUnavailable, RateLimited)
    )
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def call(self, func: Callable[..., T], *args, description: str = "", **kwargs) -> T:
        """Run ``func`` until it succeeds, raises a non-retryable error, or attempts run out."""
        label = description or getattr(func, '__name__', 'call')
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    _LOGGER.error(f"{label} failed after {attempt} attempt(s): {e}")
                    raise
                wait_time = self.delay_for(attempt)
                retry_after = getattr(e, 'retry_after', None)
                if retry_after:
                    wait_time = max(wait_time, retry_after)
                _LOGGER.warning(
                    f"{label} failed on attempt {attempt}/{self.max_attempts}, "
                    f"retrying in {wait_time}s: {e}"
                )
                self.sleep(wait_time)
        # max_attempts < 1
        return func(*args, **kwargs)


def call_with_retry(func: Callable[..., T], *args, policy: RetryPolicy = None, **kwargs) -> T:
    return (policy or RetryPolicy()).call(func, *args, **kwargs)
