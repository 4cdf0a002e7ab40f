"""
Session Store - Conversation Continuity per User

This module keeps the AI backend continuation token of every user in memory.

Key Features:
- One live session per user id
- TTL expiry (checked on lookup and by a periodic sweep)
- Size bound: the least recently accessed session is evicted first
- A failed or inconclusive AI call never clears a known token
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from AI.error_types import InvalidIdentifier

log = logging.getLogger(__name__)


@dataclass
class UserSession:
    """Conversation state of one user."""
    user_id: int
    conversation_id: str = ""
    created_at: float = 0.0
    last_accessed: float = 0.0
    request_count: int = 0


class SessionStore:
    """
    TTL-bounded, size-bounded map of user id → UserSession.

    Lifecycle: construct at service start, start() the sweep task inside the
    running loop, stop() it on shutdown.

    Example:
        store = SessionStore(ttl=24 * 3600, max_sessions=10000)
        session = store.get_or_create(user_id)
        ...
        store.update(user_id, response.conversation_id)
    """

    def __init__(
        self,
        ttl: float = 24 * 60 * 60,
        max_sessions: int = 10000,
        cleanup_interval: float = 60 * 60,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            ttl: Session lifetime in seconds, counted from creation
            max_sessions: Maximum number of live sessions
            cleanup_interval: Seconds between two background sweeps
            clock: Time source, overridable in tests
        """
        self.ttl = ttl
        self.max_sessions = max_sessions
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._sessions: Dict[str, UserSession] = {}
        self._lock = threading.RLock()
        self._sweep_task: Optional[asyncio.Task] = None

    @staticmethod
    def _validate(user_id: Any) -> str:
        if not user_id or isinstance(user_id, bool) or not isinstance(user_id, int):
            raise InvalidIdentifier(f"Invalid userId provided: {user_id!r}")
        return str(user_id)

    def _is_expired(self, session: UserSession, now: float) -> bool:
        return now - session.created_at > self.ttl

    def get_or_create(self, user_id: int) -> UserSession:
        """
        Get the live session of a user, creating a fresh one if needed.

        Args:
            user_id: Numeric user id

        Returns:
            UserSession: Live session (token is "" for a new one)

        Raises:
            InvalidIdentifier: user_id is missing or not an int
        """
        key = self._validate(user_id)
        now = self._clock()

        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                if self._is_expired(session, now):
                    log.debug("Session of user %s expired", key)
                    del self._sessions[key]
                else:
                    session.last_accessed = now
                    return session

            if len(self._sessions) >= self.max_sessions:
                self._evict_oldest()

            session = UserSession(user_id=user_id, created_at=now, last_accessed=now)
            self._sessions[key] = session
            return session

    def update(self, user_id: int, conversation_id: Optional[str]) -> None:
        """
        Store a new continuation token.

        An empty token is ignored so a previously known one survives.
        """
        if not conversation_id:
            return

        with self._lock:
            session = self.get_or_create(user_id)
            session.conversation_id = conversation_id
            session.last_accessed = self._clock()
            session.request_count += 1

    def _evict_oldest(self) -> None:
        """Evict the session with the oldest last_accessed (caller holds the lock)."""
        if not self._sessions:
            return
        oldest_key = min(self._sessions, key=lambda k: self._sessions[k].last_accessed)
        del self._sessions[oldest_key]
        log.debug("Evicted session of user %s (store full)", oldest_key)

    def cleanup(self) -> int:
        """
        Remove every expired session.

        Returns:
            int: Number of sessions removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, s in self._sessions.items() if self._is_expired(s, now)]
            for key in expired:
                del self._sessions[key]

        log.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                log.error("Session sweep failed: %s", e)

    def start(self) -> None:
        """Start the periodic sweep (must be called inside a running loop)."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            return {
                "total_sessions": len(self._sessions),
                "max_sessions": self.max_sessions,
                "ttl_seconds": self.ttl,
                "sweep_running": self._sweep_task is not None and not self._sweep_task.done(),
            }
