"""Retry budget and consecutive-failure guard."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)

# Substrings of Playwright error messages that indicate a retryable hiccup
# rather than a problem with the page itself.
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "detached",
    "target closed",
    "target page, context or browser has been closed",
    "net::err_",
    "navigation failed",
    "execution context was destroyed",
    "frame was detached",
)


def is_transient_error(exc: BaseException) -> bool:
    """True for timeouts, detached frames and network-level failures."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


@dataclass
class RetryBudget:
    """Retry budget tracker with capped exponential backoff."""

    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter: float = 0.25
    attempts: int = field(default=0, init=False)

    def should_retry(self) -> bool:
        return self.attempts < self.max_retries

    def get_backoff_delay(self) -> float:
        """Delay before the next attempt: base * multiplier**attempts, capped."""
        delay = self.backoff_base * (self.backoff_multiplier ** self.attempts)
        delay = min(delay, self.max_backoff)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def record_attempt(self) -> None:
        self.attempts += 1

    def reset(self) -> None:
        self.attempts = 0


class ConsecutiveFailureGuard:
    """Trips after ``threshold`` failures in a row; any success resets it.

    Used for anti-bot challenges: each hit earns a cooldown, and a run that
    keeps hitting challenges is escalated to a failure.
    """

    def __init__(self, threshold: int = 5, cooldown: float = 30.0, name: str = "guard") -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.name = name
        self.failure_count = 0
        self.total_failures = 0

    @property
    def tripped(self) -> bool:
        return self.failure_count >= self.threshold

    def record_failure(self) -> bool:
        """Record a failure; return True once the guard has tripped."""
        self.failure_count += 1
        self.total_failures += 1
        if self.tripped:
            LOGGER.warning("%s tripped after %d consecutive failures", self.name, self.failure_count)
        else:
            LOGGER.info("%s failure %d/%d", self.name, self.failure_count, self.threshold)
        return self.tripped

    def record_success(self) -> None:
        if self.failure_count:
            LOGGER.debug("%s reset after %d failures", self.name, self.failure_count)
        self.failure_count = 0

    def reset(self) -> None:
        self.failure_count = 0
