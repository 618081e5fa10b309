"""
Authorization gate.

The gate runs after the principal binder. A request is let through when the
strategy authorizes it or when it targets an ungated route (callback,
back-channel logout and the other authentication endpoints, which must never
be gated or the flow would loop). Otherwise a safe navigation is handed to
the strategy's on_unauthorized_safe (usually a redirect to the OP) and
anything else to on_unauthorized_unsafe (usually 401).

Strategies compose by delegation: HasRole wraps IsAuthenticated and only
changes what happens when a principal is present but lacks the role.
"""

import logging
from typing import Callable, Iterable, Optional, Protocol

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from oidc_rp.auth.principal import UserPrincipal, get_user_principal
from oidc_rp.auth.redirector import AuthenticationRedirector, AuthorizationRequest
from oidc_rp.auth.utils import get_request_uri, is_navigation, is_safe_method
from oidc_rp.errors import AuthorizationDenied, OIDCError, error_response, log_oidc_error
from oidc_rp.models import ErrorResponse

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


# =============================================================================
# Strategies
# =============================================================================

class AuthorizationStrategy(Protocol):
    def is_authorized(self, request: Request) -> bool:
        ...

    async def on_unauthorized_safe(self, request: Request) -> Response:
        ...

    async def on_unauthorized_unsafe(self, request: Request) -> Response:
        ...


class IsAuthenticated:
    """
    Any authenticated user is authorized.

    Args:
        redirector: Starts authentication for safe navigations
        configure: Optional adjustment of the authorization request
    """

    def __init__(
        self,
        redirector: AuthenticationRedirector,
        configure: Optional[Callable[[AuthorizationRequest], None]] = None,
    ):
        self.redirector = redirector
        self.configure = configure

    def is_authorized(self, request: Request) -> bool:
        return get_user_principal(request) is not None

    async def on_unauthorized_safe(self, request: Request) -> Response:
        return await self.redirector.redirect(request, get_request_uri(request), self.configure)

    async def on_unauthorized_unsafe(self, request: Request) -> Response:
        return _error(
            status.HTTP_401_UNAUTHORIZED,
            "unauthorized",
            "Authentication required",
        )


class HasRole:
    """
    Authenticated users with a given role are authorized.

    Authenticated users without the role get 403; unauthenticated requests
    are handled by the delegate.
    """

    def __init__(self, role: str, delegate: AuthorizationStrategy):
        self.role = role
        self.delegate = delegate

    def is_authorized(self, request: Request) -> bool:
        principal = get_user_principal(request)
        return principal is not None and principal.has_role(self.role)

    def _forbidden(self, request: Request) -> Response:
        logger.info(
            "Access denied: missing role",
            extra={"role": self.role, "path": request.url.path},
        )
        return _error(
            status.HTTP_403_FORBIDDEN,
            "forbidden",
            f"Role '{self.role}' is required",
        )

    async def on_unauthorized_safe(self, request: Request) -> Response:
        if get_user_principal(request) is not None:
            return self._forbidden(request)
        return await self.delegate.on_unauthorized_safe(request)

    async def on_unauthorized_unsafe(self, request: Request) -> Response:
        if get_user_principal(request) is not None:
            return self._forbidden(request)
        return await self.delegate.on_unauthorized_unsafe(request)


async def deny(strategy: AuthorizationStrategy, request: Request) -> Response:
    """
    Build the response for a request the strategy did not authorize.

    Safe navigations go to on_unauthorized_safe, anything else to
    on_unauthorized_unsafe.
    """
    try:
        if is_safe_method(request) and is_navigation(request):
            return await strategy.on_unauthorized_safe(request)
        return await strategy.on_unauthorized_unsafe(request)
    except OIDCError as e:
        log_oidc_error(e, request)
        return error_response(e)


def is_private_request(request: Request) -> bool:
    """Whether an authorization check let this request through."""
    return getattr(request.state, "is_private_request", False)


# =============================================================================
# Route Dependencies
# =============================================================================

class RequireAuthorization:
    """
    FastAPI dependency enforcing a strategy on individual routes.

    Complements the gate middleware for checks that only some routes need,
    e.g. a role on a single endpoint:

        require_admin = RequireAuthorization(HasRole("admin", IsAuthenticated(redirector)))

        @app.get("/admin")
        async def admin(principal=Depends(require_admin)): ...

    Returns the bound principal, or None when the strategy authorizes
    anonymous requests.

    Raises:
        AuthorizationDenied: Carrying the redirect, 401 or 403 response
    """

    def __init__(self, strategy: AuthorizationStrategy):
        self.strategy = strategy

    async def __call__(self, request: Request) -> Optional[UserPrincipal]:
        if self.strategy.is_authorized(request):
            request.state.is_private_request = True
            return get_user_principal(request)

        raise AuthorizationDenied(await deny(self.strategy, request))


# =============================================================================
# Middleware
# =============================================================================

def _matches(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        if prefix == "/" or path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


class AuthorizationGateMiddleware(BaseHTTPMiddleware):
    """
    Enforce an authorization strategy on a set of paths.

    Args:
        app: Downstream ASGI app
        strategy: Authorization strategy
        protected_paths: Path prefixes the gate applies to ("/" for everything)
        ungated_paths: Exact paths never gated (authentication endpoints)
    """

    def __init__(
        self,
        app: ASGIApp,
        strategy: AuthorizationStrategy,
        protected_paths: Iterable[str] = ("/",),
        ungated_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self.strategy = strategy
        self.protected_paths = tuple(protected_paths)
        self.ungated_paths = frozenset(ungated_paths)

    def applies_to(self, path: str) -> bool:
        return path not in self.ungated_paths and _matches(path, self.protected_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.applies_to(request.url.path):
            return await call_next(request)

        if self.strategy.is_authorized(request):
            request.state.is_private_request = True
            return await call_next(request)

        return await deny(self.strategy, request)
