from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class RequestDeadline:
    """Absolute point on the monotonic clock after which no new work should start."""

    at_monotonic_s: float

    @classmethod
    def from_ms(cls, deadline_ms: float) -> RequestDeadline:
        return cls(at_monotonic_s=time.monotonic() + max(0.0, float(deadline_ms)) / 1000.0)

    def remaining_s(self) -> float:
        return max(0.0, self.at_monotonic_s - time.monotonic())

    def remaining_ms(self) -> float:
        return self.remaining_s() * 1000.0

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.at_monotonic_s

    def capped(self, budget_ms: float) -> RequestDeadline:
        """The earlier of this deadline and ``budget_ms`` from now."""
        other = RequestDeadline.from_ms(budget_ms)
        return self if self.at_monotonic_s <= other.at_monotonic_s else other
