"""Truncated binary exponential backoff with jitter."""
from __future__ import annotations

import random


class Backoff:
    """
    1 s, 2 s, 4 s ... each delay spread by +/- `jitter`, never above `cap`.

    reset() after a pass that reached the server; next_delay() after a
    transient failure.
    """

    def __init__(
        self,
        base: float = 1.0,
        factor: float = 2.0,
        cap: float = 60.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        self.base = base
        self.factor = factor
        self.cap = cap
        self.jitter = jitter
        self.attempts = 0
        self._rng = rng or random.Random()

    def peek(self) -> float:
        """Un-jittered delay the next failure will produce."""
        return min(self.cap, self.base * (self.factor ** self.attempts))

    def next_delay(self) -> float:
        delay = self.peek()
        self.attempts += 1
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return min(self.cap, max(0.0, delay))

    def reset(self) -> None:
        self.attempts = 0
