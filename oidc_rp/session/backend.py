"""
Session storage.

SessionBackend is the seam to whatever keeps sessions alive; the
InMemorySessionBackend shipped here keeps them in process memory, which
matches the lifetime of the logged-out session store.

Listeners are told when a session id changes and when a session goes away
(explicit invalidation or idle expiry), which is what the back-channel
logout bookkeeping hooks into.
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Protocol

from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)


class SessionListener(Protocol):
    """Receives session lifecycle notifications."""

    def session_id_changed(self, session: Session, old_id: str) -> None:
        ...

    def session_destroyed(self, session: Session) -> None:
        ...


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionBackend(ABC):
    """Base class for session storage."""

    def __init__(self):
        self._listeners: List[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    @abstractmethod
    def create(self) -> Session:
        """Create and store a new, empty session."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """Return the live session with this id, or None."""

    @abstractmethod
    def rotate_id(self, session: Session) -> Session:
        """Give the session a fresh identifier, keeping its contents."""

    @abstractmethod
    def invalidate(self, session: Session) -> None:
        """Destroy the session."""

    def _notify_id_changed(self, session: Session, old_id: str) -> None:
        for listener in self._listeners:
            try:
                listener.session_id_changed(session, old_id)
            except Exception:
                logger.error(
                    f"Session listener {type(listener).__name__} failed on id change",
                    exc_info=True,
                )

    def _notify_destroyed(self, session: Session) -> None:
        for listener in self._listeners:
            try:
                listener.session_destroyed(session)
            except Exception:
                logger.error(
                    f"Session listener {type(listener).__name__} failed on destroy",
                    exc_info=True,
                )


class InMemorySessionBackend(SessionBackend):
    """
    Process-local session storage with idle expiry.

    Sessions idle for longer than max_age_seconds are dropped lazily on
    lookup and in bulk by purge_expired(); listeners see both as a destroy.
    """

    def __init__(self, max_age_seconds: int = 3600):
        super().__init__()
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._max_age_seconds = max_age_seconds

    def create(self) -> Session:
        session = Session(generate_session_id())
        with self._lock:
            self._sessions[session.id] = session
        logger.debug("Created session")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.idle_seconds() > self._max_age_seconds:
                del self._sessions[session_id]
                session.valid = False
                expired = True
            else:
                session.touch()
                expired = False

        if expired:
            logger.info("Session expired", extra={"idle_limit": self._max_age_seconds})
            self._notify_destroyed(session)
            return None
        return session

    def rotate_id(self, session: Session) -> Session:
        old_id = session.id
        with self._lock:
            if self._sessions.get(old_id) is not session:
                raise ValueError("Cannot rotate the id of a session that is not stored")
            del self._sessions[old_id]
            session.id = generate_session_id()
            self._sessions[session.id] = session

        self._notify_id_changed(session, old_id)
        return session

    def invalidate(self, session: Session) -> None:
        with self._lock:
            removed = self._sessions.get(session.id) is session
            if removed:
                del self._sessions[session.id]
            session.valid = False

        if removed:
            self._notify_destroyed(session)

    def invalidate_by_id(self, session_id: str) -> bool:
        """
        Invalidate a session knowing only its id.

        Returns:
            True if a session was found and destroyed
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return False
        self.invalidate(session)
        return True

    def purge_expired(self) -> int:
        """
        Drop every session idle for longer than the configured lifetime.

        Returns:
            Number of sessions removed
        """
        with self._lock:
            expired = [
                session
                for session in self._sessions.values()
                if session.idle_seconds() > self._max_age_seconds
            ]
            for session in expired:
                del self._sessions[session.id]
                session.valid = False

        for session in expired:
            self._notify_destroyed(session)

        if expired:
            logger.info(f"Purged {len(expired)} expired sessions")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
