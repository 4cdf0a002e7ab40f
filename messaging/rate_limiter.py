"""
Rate Limiter - Sliding Window Admission Control

Keeps, per user, the instants of the requests admitted during the trailing
window. State is in memory only and resets on restart.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window rate limiter keyed by user id.

    Example:
        limiter = RateLimiter(max_requests=20, window=60)
        if not limiter.is_allowed(user_id):
            return  # drop silently
    """

    def __init__(
        self,
        max_requests: int = 20,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            max_requests: Requests admitted per user inside one window
            window: Window length in seconds
            clock: Time source, overridable in tests
        """
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def is_allowed(self, user_id: Any) -> bool:
        """
        Decide whether a request from user_id is admitted.

        Args:
            user_id: Sender identifier

        Returns:
            bool: True (and the request is recorded) when under the ceiling
        """
        if not user_id:
            return False

        now = self._clock()
        key = str(user_id)

        with self._lock:
            valid = [t for t in self._requests.get(key, []) if now - t < self.window]

            if len(valid) >= self.max_requests:
                self._requests[key] = valid
                log.debug("Rate limit exceeded for user %s", key)
                return False

            valid.append(now)
            self._requests[key] = valid
            return True

    def cleanup(self) -> int:
        """Drop users whose whole window has expired. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = [
                key for key, stamps in self._requests.items()
                if not stamps or now - stamps[-1] >= self.window
            ]
            for key in stale:
                del self._requests[key]
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        """Get limiter statistics."""
        with self._lock:
            return {
                "tracked_users": len(self._requests),
                "max_requests": self.max_requests,
                "window_seconds": self.window,
            }
