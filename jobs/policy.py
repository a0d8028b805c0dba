"""
Retry policy: exponential backoff with jitter and a bounded attempt budget.

backoff(n) = min(max_delay, base_delay * 2^n), then scaled by a random factor
in [1 - jitter, 1 + jitter] and clamped back into [0, max_delay]. ``n`` is the
post-increment attempts value, so the first retry waits base_delay * 2.
"""

from dataclasses import dataclass, field
import random

from core.config import settings

# 2^32 * any sane base delay is already far beyond max_delay
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, rng: random.Random = None) -> "RetryPolicy":
        """Job-level policy"""
        return cls(
            max_attempts=settings.MAX_ATTEMPTS,
            base_delay=settings.BACKOFF_BASE_SECONDS,
            max_delay=settings.BACKOFF_MAX_SECONDS,
            jitter=settings.BACKOFF_JITTER,
            rng=rng or random.Random(),
        )

    @classmethod
    def for_deliveries(cls, rng: random.Random = None) -> "RetryPolicy":
        """Delivery-level policy: same curve, its own budget"""
        return cls(
            max_attempts=settings.MAX_DELIVERY_ATTEMPTS,
            base_delay=settings.BACKOFF_BASE_SECONDS,
            max_delay=settings.BACKOFF_MAX_SECONDS,
            jitter=settings.BACKOFF_JITTER,
            rng=rng or random.Random(),
        )

    def ceiling(self, attempts: int) -> float:
        """Backoff for ``attempts`` without jitter"""
        exponent = min(max(attempts, 0), _MAX_EXPONENT)
        return min(self.max_delay, self.base_delay * (2 ** exponent))

    def backoff(self, attempts: int) -> float:
        """Backoff in seconds for ``attempts``, jittered and capped at max_delay"""
        delay = self.ceiling(attempts)
        if self.jitter:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, min(self.max_delay, delay))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
