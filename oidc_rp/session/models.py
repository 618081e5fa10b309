"""
Typed server-side session record.

A session carries at most one pending authentication, at most one pending
logout and at most one established SessionInfo. The two pending fields are
single use: they are read through take-and-clear accessors so a replayed
callback can never find them again.
"""

import time
from typing import Optional

from oidc_rp.models import AuthenticationState, LogoutState, SessionInfo


class Session:
    """
    Server-side session.

    Attributes:
        id: Current session identifier (changes on rotation)
        pending_auth: State of the in-flight authorization request
        pending_logout: State of the in-flight RP-initiated logout
        session_info: Tokens and user information once authenticated
    """

    def __init__(self, session_id: str):
        self.id = session_id
        self.pending_auth: Optional[AuthenticationState] = None
        self.pending_logout: Optional[LogoutState] = None
        self.session_info: Optional[SessionInfo] = None
        self.created_at = time.monotonic()
        self.last_accessed = self.created_at
        self.valid = True

    def take_pending_auth(self) -> Optional[AuthenticationState]:
        """Return the pending authentication state and remove it from the session."""
        pending, self.pending_auth = self.pending_auth, None
        return pending

    def take_pending_logout(self) -> Optional[LogoutState]:
        """Return the pending logout state and remove it from the session."""
        pending, self.pending_logout = self.pending_logout, None
        return pending

    @property
    def is_authenticated(self) -> bool:
        return self.session_info is not None

    def touch(self) -> None:
        self.last_accessed = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_accessed

    def __repr__(self) -> str:
        return (
            f"Session(id=...{self.id[-6:]}, authenticated={self.is_authenticated}, "
            f"pending_auth={self.pending_auth is not None}, "
            f"pending_logout={self.pending_logout is not None})"
        )
