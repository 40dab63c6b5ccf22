"""Fixed-window rate limiter for LAVS endpoint calls"""
import logging
import time
from typing import Callable, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    max_requests: int = 60
    window_ms: int = 60000


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    # Epoch milliseconds
    reset_at: int


class _Window:
    __slots__ = ("count", "window_start")

    def __init__(self, window_start: int):
        self.count = 0
        self.window_start = window_start


class RateLimiter:
    """Counts requests per key in fixed windows.

    A window starts on the first request for a key and resets in one jump
    once ``window_ms`` has elapsed. Up to twice ``max_requests`` can pass
    around a window boundary; this approximation is accepted.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_ms: int = 60000,
        clock: Optional[Callable[[], float]] = None
    ):
        self.default_config = RateLimitConfig(max_requests=max_requests, window_ms=window_ms)
        self._clock = clock or time.time
        self._windows: Dict[str, _Window] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check(self, key: str, config: Optional[RateLimitConfig] = None) -> RateLimitResult:
        config = config or self.default_config
        now = self._now_ms()

        entry = self._windows.get(key)
        if entry is None or now - entry.window_start >= config.window_ms:
            entry = _Window(now)
            self._windows[key] = entry

        reset_at = entry.window_start + config.window_ms
        if entry.count >= config.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        entry.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - entry.count,
            reset_at=reset_at
        )

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def clear_all(self) -> None:
        self._windows.clear()

    def cleanup(self) -> int:
        """Evict keys idle for more than twice the default window"""
        cutoff = self._now_ms() - 2 * self.default_config.window_ms
        stale = [key for key, entry in list(self._windows.items()) if entry.window_start < cutoff]
        for key in stale:
            self._windows.pop(key, None)
        if stale:
            logger.debug(f"Rate limiter evicted {len(stale)} idle keys")
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)
