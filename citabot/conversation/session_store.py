"""
In-memory session repository.

Owns every live ``Session`` together with the per-session ``asyncio.Lock``
that serialises message processing, and the inactivity-based expiry rules.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterator, Optional, TypedDict

from citabot.config import BotConfig, settings
from citabot.schemas.conversation_schema import Session, utcnow

logger = logging.getLogger(__name__)


class SessionStats(TypedDict):
    active: int
    completed: int
    by_state: dict[str, int]
    by_language: dict[str, int]


class SessionStore:
    """Keyed map of sessions plus their locks."""

    def __init__(self, bot_config: Optional[BotConfig] = None) -> None:
        self._config = bot_config or settings.bot
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self._config.session_timeout_seconds)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str, now: Optional[datetime] = None) -> tuple[Session, bool]:
        """Return the session for ``session_id`` and whether it was just created."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session, False
        now = now or utcnow()
        session = Session(
            id=session_id,
            language=self._config.default_language,
            start_time=now,
            last_activity=now,
        )
        self._sessions[session_id] = session
        logger.info("Session created: %s", session_id)
        return session, True

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def remove(self, session_id: str) -> Optional[Session]:
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) - session.last_activity > self.timeout

    def sweep_expired(self, now: Optional[datetime] = None) -> list[Session]:
        """Evict every session idle past the timeout and return the evicted ones.

        Sessions whose lock is currently held are skipped; they are being
        processed and will refresh their activity.
        """
        now = now or utcnow()
        expired = []
        for session in list(self._sessions.values()):
            lock = self._locks.get(session.id)
            if lock is not None and lock.locked():
                continue
            if self.is_expired(session, now):
                self.remove(session.id)
                expired.append(session)
        if expired:
            logger.info("Expired %d idle session(s)", len(expired))
        return expired

    def stats(self) -> SessionStats:
        sessions = list(self._sessions.values())
        return {
            "active": len(sessions),
            "completed": sum(1 for s in sessions if s.completed),
            "by_state": dict(Counter(s.state.value for s in sessions)),
            "by_language": dict(Counter(s.language for s in sessions)),
        }
