from __future__ import annotations

from dataclasses import dataclass
import random


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy shared by the coordinator (page retries) and the worker (item retries)."""

    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 60000
    jitter_ratio: float = 0.25
    max_attempts: int = 3
    page_retry_attempts: int = 3

    def delay_seconds(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Delay before retry number `attempt` (1-based): base * multiplier^(attempt-1), capped, plus jitter."""
        exponent = max(attempt, 1) - 1
        raw_ms = min(self.base_delay_ms * (self.multiplier**exponent), self.max_delay_ms)
        jitter_ms = (rng or random).uniform(0.0, raw_ms * self.jitter_ratio)
        return min(raw_ms + jitter_ms, self.max_delay_ms) / 1000


@dataclass(frozen=True)
class RateLimitPolicy:
    request_delay_ms: int = 2000
    page_delay_ms: int = 750
    verify_delay_ms: int = 3000
    low_factor: float = 0.6
    high_factor: float = 1.6

    def jittered(self, base_ms: int, *, rng: random.Random | None = None) -> float:
        if base_ms <= 0:
            return 0.0
        return (rng or random).uniform(base_ms * self.low_factor, base_ms * self.high_factor) / 1000

    def request_delay(self, *, rng: random.Random | None = None) -> float:
        return self.jittered(self.request_delay_ms, rng=rng)

    def page_delay(self, *, rng: random.Random | None = None) -> float:
        return self.jittered(self.page_delay_ms, rng=rng)

    def verify_delay(self, *, rng: random.Random | None = None) -> float:
        return self.jittered(self.verify_delay_ms, rng=rng)
