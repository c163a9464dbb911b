"""Exponential retry backoff with bounded jitter."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

RandomUniform = Callable[[float, float], float]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Immutable retry policy shared by the pipeline and the coordinator.

    ``delay(failure_count)`` grows as ``base_delay * multiplier ** (n - 1)``
    with the exponent capped at ``max_retries``. A uniform jitter of
    ``±jitter_fraction`` of that value is applied and the result is clamped
    to ``[0, max_delay]``.
    """

    base_delay: float = 30.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_delay: float = 300.0
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter_fraction < 1:
            raise ValueError("jitter_fraction must be in [0, 1)")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    def delay(self, failure_count: int, *, uniform: RandomUniform | None = None) -> float:
        """Return retry delay in seconds for the given consecutive failure count."""

        if failure_count <= 0:
            return 0.0
        exponent = min(failure_count - 1, self.max_retries)
        exponential = self.base_delay * (self.multiplier**exponent)
        span = exponential * self.jitter_fraction
        draw = uniform or random.uniform
        offset = draw(-span, span) if span > 0 else 0.0
        return min(max(0.0, exponential + offset), self.max_delay)


STANDARD_BACKOFF = BackoffPolicy()
