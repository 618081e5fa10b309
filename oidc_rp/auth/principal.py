"""
Authenticated user principal and its per-request binding.

Key responsibilities:
- UserPrincipal: read-only view over the SessionInfo of a session
  (name, role predicate), with simple and Keycloak flavours
- UserPrincipalFactory: pluggable construction plus a hook called once
  when a user completes authentication
- SessionPrincipalBinderMiddleware: on every request, drops sessions whose
  OP session was logged out through the back channel, then binds the
  principal for downstream handlers
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from oidc_rp.auth.logged_out_store import NULL_LOGGED_OUT_SESSION_STORE, LoggedOutSessionStore
from oidc_rp.models import SessionInfo
from oidc_rp.session.middleware import get_session, invalidate_session
from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)


# =============================================================================
# Principals
# =============================================================================

class UserPrincipal(ABC):
    """Authenticated user, derived from the session's SessionInfo."""

    def __init__(self, session_info: SessionInfo):
        self.session_info = session_info

    @property
    def name(self) -> str:
        """The userinfo subject."""
        return self.session_info.subject

    @property
    def claims(self) -> Dict[str, Any]:
        """ID token claims overlaid with userinfo claims."""
        return {**self.session_info.id_token_claims, **self.session_info.userinfo}

    @abstractmethod
    def has_role(self, role: str) -> bool:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class SimpleUserPrincipal(UserPrincipal):
    """Principal without roles."""

    def has_role(self, role: str) -> bool:
        return False


class KeycloakUserPrincipal(UserPrincipal):
    """Principal whose roles are Keycloak realm roles (realm_access.roles)."""

    @property
    def roles(self) -> frozenset:
        realm_access = self.session_info.userinfo.get("realm_access")
        if not isinstance(realm_access, dict):
            return frozenset()
        roles = realm_access.get("roles")
        if not isinstance(roles, list):
            return frozenset()
        return frozenset(role for role in roles if isinstance(role, str))

    def has_role(self, role: str) -> bool:
        return role in self.roles


# =============================================================================
# Factories
# =============================================================================

class UserPrincipalFactory(Protocol):
    def create_user_principal(self, session_info: SessionInfo, session: Session) -> UserPrincipal:
        ...

    def user_authenticated(self, session_info: SessionInfo, session: Session) -> None:
        ...


class SimpleUserPrincipalFactory:
    principal_class = SimpleUserPrincipal

    def create_user_principal(self, session_info: SessionInfo, session: Session) -> UserPrincipal:
        return self.principal_class(session_info)

    def user_authenticated(self, session_info: SessionInfo, session: Session) -> None:
        logger.info("User authenticated", extra={"sub": session_info.subject})


class KeycloakUserPrincipalFactory(SimpleUserPrincipalFactory):
    principal_class = KeycloakUserPrincipal


def user_principal_factory_for(role_claim_mode: str) -> UserPrincipalFactory:
    """Factory matching the ROLE_CLAIM_MODE setting."""
    if role_claim_mode == "keycloak":
        return KeycloakUserPrincipalFactory()
    return SimpleUserPrincipalFactory()


# =============================================================================
# Request Accessors
# =============================================================================

def get_user_principal(request: Request) -> Optional[UserPrincipal]:
    return getattr(request.state, "user_principal", None)


def get_remote_user(request: Request) -> Optional[str]:
    principal = get_user_principal(request)
    return principal.name if principal is not None else None


def is_user_in_role(request: Request, role: str) -> bool:
    principal = get_user_principal(request)
    return principal is not None and principal.has_role(role)


def require_user_principal(request: Request) -> UserPrincipal:
    """
    FastAPI dependency returning the bound principal.

    Raises:
        HTTPException: 401 if the request is not authenticated
    """
    principal = get_user_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return principal


# =============================================================================
# Middleware
# =============================================================================

class SessionPrincipalBinderMiddleware(BaseHTTPMiddleware):
    """
    Bind the authenticated principal of the session to the request.

    Sessions whose OP session was logged out (back-channel logout) are
    invalidated here, on their first request after the logout.

    Args:
        app: Downstream ASGI app
        user_principal_factory: Builds principals from SessionInfo
        logged_out_session_store: Shared store of logged-out OP sessions
    """

    def __init__(
        self,
        app: ASGIApp,
        user_principal_factory: Optional[UserPrincipalFactory] = None,
        logged_out_session_store: LoggedOutSessionStore = NULL_LOGGED_OUT_SESSION_STORE,
    ):
        super().__init__(app)
        self.user_principal_factory = user_principal_factory or SimpleUserPrincipalFactory()
        self.logged_out_session_store = logged_out_session_store

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.user_principal = None
        request.state.remote_user = None

        session = get_session(request)
        session_info = session.session_info if session is not None else None

        if session_info is not None:
            sid = session_info.sid
            if sid is not None and self.logged_out_session_store.is_logged_out(sid):
                logger.info(
                    "Invalidating session logged out by the OpenID Provider",
                    extra={"sid": sid, "path": request.url.path},
                )
                invalidate_session(request)
            else:
                principal = self.user_principal_factory.create_user_principal(session_info, session)
                request.state.user_principal = principal
                request.state.remote_user = principal.name
                request.scope["user"] = principal

        return await call_next(request)

