"""
Retry Policy - shared backoff and transient/terminal classification.

Webhook replays and reauthorization retries both schedule through a single
RetryPolicy so the delay curve and the retry-eligibility rules live in one place.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Callable

from app.core.exceptions import (
    ConcurrencyConflictError,
    GatewayTransientError,
    RepositoryUnavailableError,
)

# חריגות שמצדיקות ניסיון חוזר ברקע
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    GatewayTransientError,
    RepositoryUnavailableError,
    ConcurrencyConflictError,
    asyncio.TimeoutError,
    TimeoutError,
)


def calculate_backoff_seconds(
    attempts: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff ``base_seconds * 2**attempts`` with a hard upper bound.

    Avoids computing huge powers when attempts is unexpectedly large.
    """
    if attempts < 0:
        attempts = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # We need to know whether 2**attempts >= ceil(max/base) without computing 2**attempts.
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds  # ceil div
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if attempts >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << attempts)
    return min(backoff, max_backoff_seconds)


def is_transient_error(exc: BaseException) -> bool:
    """Default classifier: True when retrying later can succeed"""
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


@dataclass
class RetryPolicy:
    """
    Max attempts, delay curve and classifier shared by every retry consumer.

    ``attempts`` on a task counts failed queue executions; the inline failure
    that enqueued the task is not in it. A task is dead-lettered once
    ``attempts >= max_attempts``, which is when the total number of failures,
    the original one included, exceeds ``max_attempts``. With the default of
    5 an operation gets the original try plus 5 re-attempts from the queue.
    """

    max_attempts: int = 5
    base_seconds: int = 30
    max_backoff_seconds: int = 3600
    jitter_ratio: float = 0.1
    classifier: Callable[[BaseException], bool] = is_transient_error
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_seconds=settings.RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.RETRY_MAX_BACKOFF_SECONDS,
            jitter_ratio=settings.RETRY_JITTER_RATIO,
        )

    def delay_seconds(self, attempts: int) -> float:
        """Backoff for the given attempt count, plus proportional jitter"""
        backoff = calculate_backoff_seconds(
            attempts,
            base_seconds=self.base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )
        if backoff == 0 or self.jitter_ratio <= 0:
            return float(backoff)
        return backoff + self.rng.uniform(0, backoff * self.jitter_ratio)

    def is_transient(self, exc: BaseException) -> bool:
        return self.classifier(exc)

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
