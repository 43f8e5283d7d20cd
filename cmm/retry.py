from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff, capped in interval but not in attempts."""

    initial_s: float = 1.0
    factor: float = 2.0
    max_s: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        attempt = max(1, int(attempt))
        # Cap the exponent so huge attempt counts cannot overflow.
        raw = self.initial_s * (self.factor ** min(attempt - 1, 64))
        return max(0.0, min(self.max_s, raw))

