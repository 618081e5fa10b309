"""
Server-side sessions: typed session record, storage backends and the
cookie middleware binding them to requests.
"""

from oidc_rp.session.backend import InMemorySessionBackend, SessionBackend, SessionListener
from oidc_rp.session.middleware import (
    SessionMiddleware,
    get_session,
    invalidate_session,
    rotate_session_id,
)
from oidc_rp.session.models import Session

__all__ = [
    "Session",
    "SessionBackend",
    "SessionListener",
    "InMemorySessionBackend",
    "SessionMiddleware",
    "get_session",
    "invalidate_session",
    "rotate_session_id",
]
