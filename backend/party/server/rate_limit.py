"""Token bucket rate limiter for inbound WebSocket frames."""

import time
from collections.abc import Callable


class TokenBucket:
    """Tokens refill at ``rate`` per second up to ``burst``; each frame spends one."""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._rate = rate
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last_refill = clock()

    def consume(self) -> bool:
        """Try to spend one token. Returns False when the caller should drop the frame."""
        now = self._clock()
        self._tokens = min(self._burst, self._tokens + (now - self._last_refill) * self._rate)
        self._last_refill = now

        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False
