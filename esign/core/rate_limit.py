"""
Signing provider rate-limit guard.

Tracks one cooldown window for the remote provider. When the provider
answers 429 the window is opened for ``retry_after`` seconds; every status
fetch and reminder send consults ``is_limited()`` first and skips the call
while the window is open. The window closes lazily on the next check after
it expires.

One guard is built per process and injected into the client and services.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from esign.utils.timestamps import isoformat, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitState:
    """Snapshot of the guard, safe to hand to callers."""

    is_limited: bool = False
    retry_after: Optional[int] = None
    retry_after_date: Optional[datetime] = None
    hit_count: int = 0
    last_hit: Optional[datetime] = None
    seconds_remaining: int = 0

    def to_dict(self) -> dict:
        return {
            "is_limited": self.is_limited,
            "retry_after": self.retry_after,
            "retry_after_date": isoformat(self.retry_after_date),
            "hit_count": self.hit_count,
            "last_hit": isoformat(self.last_hit),
            "seconds_remaining": self.seconds_remaining,
        }


class RateLimitGuard:
    """Process-wide cooldown window for the signing provider."""

    def __init__(self, default_retry_after: int = 3600, clock: Callable[[], datetime] = utcnow):
        self.default_retry_after = default_retry_after
        self._clock = clock
        self._lock = threading.Lock()
        self._limited = False
        self._retry_after: Optional[int] = None
        self._retry_after_date: Optional[datetime] = None
        self._hit_count = 0
        self._last_hit: Optional[datetime] = None

    def set_rate_limit(self, retry_after: Optional[int] = None) -> datetime:
        """Open the cooldown window. Returns the time the window closes."""
        seconds = retry_after if retry_after and retry_after > 0 else self.default_retry_after
        now = self._clock()
        with self._lock:
            self._limited = True
            self._retry_after = seconds
            self._retry_after_date = now + timedelta(seconds=seconds)
            self._hit_count += 1
            self._last_hit = now
            until = self._retry_after_date
            hits = self._hit_count
        logger.warning(f"Signing provider rate limit hit #{hits}; calls suspended until {until.isoformat()}")
        return until

    def is_limited(self) -> bool:
        with self._lock:
            return self._check_locked()

    def _check_locked(self) -> bool:
        if not self._limited:
            return False
        if self._retry_after_date is not None and self._clock() > self._retry_after_date:
            logger.info("Signing provider rate limit window expired")
            self._limited = False
            self._retry_after = None
            self._retry_after_date = None
            return False
        return True

    def reset(self) -> None:
        with self._lock:
            self._limited = False
            self._retry_after = None
            self._retry_after_date = None
        logger.info("Signing provider rate limit manually reset")

    def time_remaining(self) -> int:
        """Whole seconds left in the window, 0 when not limited."""
        with self._lock:
            if not self._check_locked() or self._retry_after_date is None:
                return 0
            remaining = (self._retry_after_date - self._clock()).total_seconds()
        return max(0, int(remaining + 0.999))

    @property
    def hit_count(self) -> int:
        return self._hit_count

    def status(self) -> RateLimitState:
        with self._lock:
            limited = self._check_locked()
            state = RateLimitState(
                is_limited=limited,
                retry_after=self._retry_after,
                retry_after_date=self._retry_after_date,
                hit_count=self._hit_count,
                last_hit=self._last_hit,
            )
        state.seconds_remaining = self.time_remaining()
        return state
