"""Retry policy for transactional units and the pauses it schedules between attempts."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from random import Random, SystemRandom

from app.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """How often a unit is attempted after a TransientError, and how long to wait between tries.

    The pause after attempt ``n`` is ``base_delay * factor ** (n - 1)`` plus up to
    ``jitter`` of itself, never more than ``max_delay``. A zero ``base_delay``
    retries immediately.
    """

    max_attempts: int = 4
    base_delay: float = 0.05
    factor: float = 2.0
    max_delay: float = 1.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.transaction_max_attempts,
            base_delay=settings.transaction_backoff_base_seconds,
            factor=settings.transaction_backoff_factor,
            max_delay=settings.transaction_backoff_max_seconds,
            jitter=settings.transaction_backoff_jitter,
        )

    def schedule(self, rng: Random | None = None) -> Iterator[tuple[int, float]]:
        return exponential_backoff(self, rng=rng)


def exponential_backoff(
    policy: RetryPolicy, *, rng: Random | None = None
) -> Iterator[tuple[int, float]]:
    """Yield ``(attempt, pause)`` for every attempt ``policy`` allows.

    ``pause`` is the wait before the next attempt if this one fails; the last
    attempt has nothing to wait for and gets 0.0.
    """
    rng = rng or SystemRandom()
    delay = policy.base_delay
    for attempt in range(1, policy.max_attempts + 1):
        if attempt == policy.max_attempts:
            yield attempt, 0.0
            return
        spread = rng.uniform(0, delay * policy.jitter) if policy.jitter and delay else 0.0
        yield attempt, min(delay + spread, policy.max_delay)
        delay = min(delay * policy.factor, policy.max_delay)
