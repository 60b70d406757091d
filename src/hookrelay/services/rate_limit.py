"""Fixed-window request rate limiting for webhook endpoints.

Counts requests per client key (provider + client address) in windows of
window_seconds. A limit of 0 disables limiting. State is process-local:
each API instance enforces its own budget.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Result of one rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        retry_after: Seconds until the window resets (0 when allowed).
    """

    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Per-key fixed-window counter.

    Attributes:
        max_requests: Requests allowed per window (0 = unlimited).
        window_seconds: Window length.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 0:
            msg = f"max_requests must be >= 0, got {max_requests}"
            raise ValueError(msg)
        if window_seconds <= 0:
            msg = f"window_seconds must be > 0, got {window_seconds}"
            raise ValueError(msg)

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for key and decide whether it is allowed."""
        if not self.enabled:
            return RateLimitDecision(allowed=True, remaining=0)

        now = self._clock()
        window = self._windows.get(key)

        if window is None or window.reset_at <= now:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            if len(self._windows) > 1024:
                self.purge_expired()
            return RateLimitDecision(allowed=True, remaining=self.max_requests - 1)

        if window.count >= self.max_requests:
            retry_after = max(1, int(window.reset_at - now + 0.999))
            logger.warning(
                "Rate limit exceeded: key=%s, limit=%d, retry_after=%ds",
                key,
                self.max_requests,
                retry_after,
            )
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        window.count += 1
        return RateLimitDecision(allowed=True, remaining=self.max_requests - window.count)

    def purge_expired(self) -> int:
        """Forget windows that have already reset. Returns how many were dropped."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
