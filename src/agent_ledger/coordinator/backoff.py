"""Retry delay helpers shared by the detector, dispatcher and reconciler."""

from __future__ import annotations

import random


def full_jitter_delay(
    *,
    retry_number: int,
    base_seconds: float,
    max_seconds: float,
    rng: random.Random,
) -> float:
    """Uniform delay in ``[0, min(max, base * 2**(n-1))]``."""

    max_delay = min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
    return rng.uniform(0, max_delay)


class ReconnectBackoff:
    """Doubling reconnect delay that resets after a successful read."""

    def __init__(self, *, base_seconds: float, max_seconds: float) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def next_delay(self) -> float:
        self._failures += 1
        return min(self.max_seconds, self.base_seconds * (2 ** (self._failures - 1)))

    def reset(self) -> None:
        self._failures = 0
