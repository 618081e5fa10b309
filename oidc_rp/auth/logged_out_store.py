"""
Registry of OP sessions terminated through back-channel logout.

Key responsibilities:
- Map each OP session id (sid) to the local session ids bound to it
  (several tabs or browsers may share one OP session)
- Report a sid as logged out once no local session is bound to it
- Keep the mapping bounded: keys disappear when their last session goes

Every mutation is an atomic read-modify-write on one key. Local sessions
are invalidated lazily by the principal binder on their next request;
subclasses may override do_logout() to invalidate eagerly instead.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, FrozenSet, Iterable, Optional

logger = logging.getLogger(__name__)


class LoggedOutSessionStore(ABC):
    """
    Base class for logged-out session stores.

    acquire/release/renew default to no-ops and is_logged_out to False, so a
    store that only records logouts elsewhere only has to implement logout().
    """

    def acquire(self, sid: str, session_id: str) -> None:
        """Bind a local session to an OP session."""

    def release(self, sid: str, session_id: str) -> None:
        """Unbind a local session (it was destroyed)."""

    def renew(self, sid: str, old_session_id: str, new_session_id: str) -> None:
        """Follow a local session through an id rotation."""

    @abstractmethod
    def logout(self, sid: str) -> None:
        """Mark an OP session as logged out."""

    def is_logged_out(self, sid: str) -> bool:
        return False


class NullLoggedOutSessionStore(LoggedOutSessionStore):
    """Store for deployments without back-channel logout: nothing is ever logged out."""

    def logout(self, sid: str) -> None:
        logger.debug("Back-channel logout ignored (no logged-out session store configured)")


NULL_LOGGED_OUT_SESSION_STORE = NullLoggedOutSessionStore()


class InMemoryLoggedOutSessionStore(LoggedOutSessionStore):
    """
    Process-local store.

    A sid is logged out when it has no bound local session, which covers
    both an explicit logout and a sid that was never acquired.
    """

    def __init__(self):
        self._sessions: Dict[str, FrozenSet[str]] = {}
        self._lock = threading.Lock()

    def _compute(self, sid: str, update: Callable[[Optional[FrozenSet[str]]], Optional[FrozenSet[str]]]) -> None:
        with self._lock:
            new_value = update(self._sessions.get(sid))
            if new_value:
                self._sessions[sid] = new_value
            else:
                self._sessions.pop(sid, None)

    def acquire(self, sid: str, session_id: str) -> None:
        self._compute(sid, lambda current: (current or frozenset()) | {session_id})

    def release(self, sid: str, session_id: str) -> None:
        def update(current):
            if current is None:
                return None
            return current - {session_id}

        self._compute(sid, update)

    def renew(self, sid: str, old_session_id: str, new_session_id: str) -> None:
        def update(current):
            if current is None:
                logger.warning("Renewing a session that was never acquired", extra={"sid": sid})
                return frozenset({new_session_id})
            return (current - {old_session_id}) | {new_session_id}

        self._compute(sid, update)

    def logout(self, sid: str) -> None:
        with self._lock:
            session_ids = self._sessions.pop(sid, frozenset())

        logger.info(
            f"OP session logged out; {len(session_ids)} local session(s) affected",
            extra={"sid": sid},
        )
        if session_ids:
            self.do_logout(session_ids)

    def do_logout(self, session_ids: Iterable[str]) -> None:
        """
        Called with the local sessions bound to a sid that just logged out.

        Does nothing: those sessions are invalidated on their next request.
        """

    def is_logged_out(self, sid: str) -> bool:
        with self._lock:
            return not self._sessions.get(sid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionInvalidatingLoggedOutSessionStore(InMemoryLoggedOutSessionStore):
    """
    In-memory store that invalidates the affected local sessions immediately.

    Args:
        invalidate: Callable destroying a local session by id, e.g.
            InMemorySessionBackend.invalidate_by_id
    """

    def __init__(self, invalidate: Callable[[str], object]):
        super().__init__()
        self._invalidate = invalidate

    def do_logout(self, session_ids: Iterable[str]) -> None:
        for session_id in session_ids:
            self._invalidate(session_id)
