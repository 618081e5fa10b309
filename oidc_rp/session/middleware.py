"""
Session cookie middleware.

The cookie only carries the session identifier, signed with itsdangerous so
a forged or tampered value is ignored. Everything else lives server-side in
a SessionBackend. Handlers reach the session through get_session() and
friends; the middleware writes or clears the cookie once the response is
known.
"""

import logging
from typing import Optional

from fastapi import Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from oidc_rp.session.backend import SessionBackend
from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)

SESSION_SCOPE_KEY = "oidc_rp.session"


# =============================================================================
# Per-request Session Handle
# =============================================================================

class RequestSession:
    """
    Session handle for the duration of one request.

    Lazily creates a session when asked to, and remembers rotations and
    invalidations so the middleware can update the cookie afterwards.
    """

    def __init__(self, backend: SessionBackend, session_id: Optional[str] = None):
        self.backend = backend
        self._session: Optional[Session] = backend.get(session_id) if session_id else None

    def get(self, create: bool = False) -> Optional[Session]:
        """
        Return the current session.

        Args:
            create: Create a new session if there is none

        Returns:
            The session, or None when absent and create is False
        """
        if self._session is not None and not self._session.valid:
            self._session = None
        if self._session is None and create:
            self._session = self.backend.create()
        return self._session

    def rotate_id(self) -> Session:
        """
        Rotate the identifier of the current session (creating one if needed).
        """
        session = self.get(create=True)
        return self.backend.rotate_id(session)

    def invalidate(self) -> None:
        """Destroy the current session, if any."""
        session = self.get()
        if session is not None:
            self.backend.invalidate(session)
        self._session = None


def _request_session(request: Request) -> RequestSession:
    try:
        return request.scope[SESSION_SCOPE_KEY]
    except KeyError:
        raise RuntimeError("SessionMiddleware must be installed to use server-side sessions")


def get_session(request: Request, create: bool = False) -> Optional[Session]:
    """
    Return the session bound to the request.

    Args:
        request: Current request
        create: Create a session if the browser has none

    Returns:
        Session, or None when absent and create is False
    """
    return _request_session(request).get(create=create)


def rotate_session_id(request: Request) -> Session:
    """Give the request's session a new identifier (anti session fixation)."""
    return _request_session(request).rotate_id()


def invalidate_session(request: Request) -> None:
    """Destroy the request's session; the cookie is cleared on the way out."""
    _request_session(request).invalidate()


# =============================================================================
# Middleware
# =============================================================================

class SessionMiddleware(BaseHTTPMiddleware):
    """
    Bind a server-side session to each request through a signed cookie.
    """

    def __init__(
        self,
        app: ASGIApp,
        backend: SessionBackend,
        secret_key: str,
        cookie_name: str = "oidc_session",
        max_age: int = 3600,
        https_only: bool = True,
        same_site: str = "lax",
        path: str = "/",
    ):
        super().__init__(app)
        self.backend = backend
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.https_only = https_only
        self.same_site = same_site
        self.path = path
        self._serializer = URLSafeTimedSerializer(secret_key, salt="oidc-rp-session")

    def _load_session_id(self, request: Request) -> Optional[str]:
        raw_cookie = request.cookies.get(self.cookie_name)
        if not raw_cookie:
            return None
        try:
            return self._serializer.loads(raw_cookie, max_age=self.max_age)
        except BadSignature:
            logger.warning(
                "Ignoring invalid session cookie",
                extra={"path": request.url.path},
            )
            return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        session_id = self._load_session_id(request)
        handle = RequestSession(self.backend, session_id)
        request.scope[SESSION_SCOPE_KEY] = handle

        response = await call_next(request)

        session = handle.get()
        if session is not None:
            response.set_cookie(
                self.cookie_name,
                self._serializer.dumps(session.id),
                max_age=self.max_age,
                path=self.path,
                secure=self.https_only,
                httponly=True,
                samesite=self.same_site,
            )
        elif self.cookie_name in request.cookies:
            response.delete_cookie(
                self.cookie_name,
                path=self.path,
                secure=self.https_only,
                httponly=True,
                samesite=self.same_site,
            )

        return response
