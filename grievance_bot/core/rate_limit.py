"""
Per-process rate limiting and message deduplication.

Both are plain objects built once by the runtime and injected where needed.
Neither awaits between check and update, so they are safe on one event loop.
"""
import time
from typing import Callable


class RateLimiter:
    """Fixed window message counter per user"""

    def __init__(
        self,
        max_messages: int = 15,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self._clock = clock
        # user -> (window_start, count)
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_prune = clock()

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.window_seconds:
            return
        self._windows = {
            user: entry
            for user, entry in self._windows.items()
            if now - entry[0] < self.window_seconds
        }
        self._last_prune = now

    def allow(self, user: str) -> bool:
        """Count one message; False once the user is over the limit"""
        now = self._clock()
        self._prune(now)
        window_start, count = self._windows.get(user, (now, 0))
        if now - window_start >= self.window_seconds:
            window_start, count = now, 0
        count += 1
        self._windows[user] = (window_start, count)
        return count <= self.max_messages

    def reset(self, user: str | None = None) -> None:
        if user is None:
            self._windows.clear()
        else:
            self._windows.pop(user, None)


class MessageDeduper:
    """Remembers message ids for ``ttl_seconds``; entries expire on their own"""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        expired = [mid for mid, expires_at in self._expiry.items() if expires_at <= now]
        for mid in expired:
            del self._expiry[mid]

    def is_duplicate(self, message_id: str) -> bool:
        """True if seen within the TTL, otherwise records it and returns False"""
        now = self._clock()
        self._prune(now)
        if message_id in self._expiry:
            return True
        self._expiry[message_id] = now + self.ttl_seconds
        return False

    def __len__(self) -> int:
        return len(self._expiry)
