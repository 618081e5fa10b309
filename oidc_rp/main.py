"""
FastAPI Relying-Party Application Factory
=========================================

Entry point wiring the OpenID Connect relying-party components into a
FastAPI application.

Request pipeline (outermost first):
    CORS → SessionMiddleware → SessionPrincipalBinderMiddleware
         → AuthorizationGateMiddleware (authenticated) → routes

    /admin additionally checks the admin role through a route dependency.

Routes:
    - /auth/*       : Login, callback, logout, logout callback, back-channel logout
    - /health       : Health check endpoint (never gated)
    - /, /me        : Protected examples exposing the principal
    - /admin        : Protected example requiring the admin role

Environment Variables Required:
    - OIDC_ISSUER: Issuer of the OpenID Provider
    - OIDC_CLIENT_ID: Registered client id
    - OIDC_CLIENT_SECRET: Client secret (unless OIDC_CLIENT_AUTH_METHOD=none)
    - SESSION_SECRET: Secret for signing the session cookie
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn oidc_rp.main:create_app --factory --reload --port 8080

    Production:
        uvicorn oidc_rp.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from oidc_rp.auth.backchannel import BackchannelLogoutHandler, BackchannelLogoutSessionListener
from oidc_rp.auth.callback import CallbackHandler
from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.gate import AuthorizationGateMiddleware, HasRole, IsAuthenticated, RequireAuthorization
from oidc_rp.auth.logged_out_store import (
    NULL_LOGGED_OUT_SESSION_STORE,
    InMemoryLoggedOutSessionStore,
    LoggedOutSessionStore,
)
from oidc_rp.auth.login import LoginHandler
from oidc_rp.auth.logout import LogoutCallbackHandler, LogoutInitiator
from oidc_rp.auth.principal import (
    SessionPrincipalBinderMiddleware,
    UserPrincipal,
    UserPrincipalFactory,
    require_user_principal,
    user_principal_factory_for,
)
from oidc_rp.auth.provider import Configuration
from oidc_rp.auth.redirector import AuthenticationRedirector, AuthorizationRequestSender
from oidc_rp.auth.routes import build_auth_router
from oidc_rp.auth.tokens import RevokingOAuthTokensHandler
from oidc_rp.auth.validators import IDTokenValidator, LogoutTokenValidator
from oidc_rp.config import Settings, get_settings, validate_configuration
from oidc_rp.errors import register_exception_handlers
from oidc_rp.extensions.dpop import DPoPSupport
from oidc_rp.models import HealthResponse
from oidc_rp.session.backend import InMemorySessionBackend
from oidc_rp.session.middleware import SessionMiddleware

logger = logging.getLogger("oidc_rp.main")

SESSION_PURGE_INTERVAL_SECONDS = 60


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class AppState:
    """
    Shared relying-party components, exposed as app.state.rp.
    """

    def __init__(
        self,
        settings: Settings,
        configuration: Configuration,
        client: OIDCClient,
        session_backend: InMemorySessionBackend,
        logged_out_session_store: LoggedOutSessionStore,
        token_revoker: Optional[RevokingOAuthTokensHandler],
    ):
        self.settings = settings
        self.configuration = configuration
        self.client = client
        self.session_backend = session_backend
        self.logged_out_session_store = logged_out_session_store
        self.token_revoker = token_revoker


async def _purge_sessions_periodically(backend: InMemorySessionBackend) -> None:
    while True:
        await asyncio.sleep(SESSION_PURGE_INTERVAL_SECONDS)
        purge_expired_sessions(backend)


def purge_expired_sessions(backend: InMemorySessionBackend) -> None:
    """
    Run one purge of idle sessions.

    Failures are logged so the periodic task keeps running.
    """
    try:
        backend.purge_expired()
    except Exception as e:
        logger.error(f"Session purge failed: {str(e)}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Start the periodic purge of idle sessions

    Shutdown tasks:
        - Stop the purge task
        - Wait for background token revocations
        - Close the HTTP client used for the OP
    """
    rp: AppState = app.state.rp

    logger.info(
        "Starting relying-party service",
        extra={"issuer": rp.configuration.issuer, "client_id": rp.configuration.client_id},
    )
    purge_task = asyncio.create_task(_purge_sessions_periodically(rp.session_backend))

    yield

    logger.info("Shutting down relying-party service")
    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task

    if rp.token_revoker is not None:
        await rp.token_revoker.drain()
    await rp.client.aclose()

    logger.info("Relying-party service shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    configuration: Optional[Configuration] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    logged_out_session_store: Optional[LoggedOutSessionStore] = None,
    user_principal_factory: Optional[UserPrincipalFactory] = None,
    request_sender: Optional[AuthorizationRequestSender] = None,
    dpop_support: Optional[DPoPSupport] = None,
    logout_token_decryption_key: Any = None,
    protected_paths: Iterable[str] = ("/",),
    public_paths: Iterable[str] = ("/health",),
    admin_role: str = "admin",
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings (defaults to get_settings())
        configuration: Provider configuration (discovered from settings if omitted)
        http_client: httpx client for the OP endpoints
        logged_out_session_store: Back-channel logout store (in-memory by default)
        user_principal_factory: Principal construction (from ROLE_CLAIM_MODE by default)
        request_sender: PAR/JAR helper for authorization requests
        dpop_support: Enables DPoP-bound tokens
        logout_token_decryption_key: Key for encrypted logout tokens
        protected_paths: Path prefixes requiring authentication
        public_paths: Exact paths left open besides the authentication routes
        admin_role: Role required under /admin

    Returns:
        FastAPI: Configured application instance

    Raises:
        RuntimeError: If the configuration is invalid
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not status["valid"]:
        raise RuntimeError(f"Invalid configuration: {'; '.join(status['errors'])}")

    configuration = configuration or Configuration.from_settings(settings)

    # =========================================================================
    # Components
    # =========================================================================

    client = OIDCClient(
        configuration,
        http_client=http_client,
        dpop_support=dpop_support,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        jwks_cache_seconds=settings.JWKS_CACHE_SECONDS,
    )
    session_backend = InMemorySessionBackend(settings.SESSION_MAX_AGE_SECONDS)

    if logged_out_session_store is None:
        logged_out_session_store = (
            InMemoryLoggedOutSessionStore()
            if settings.ENABLE_BACKCHANNEL_LOGOUT
            else NULL_LOGGED_OUT_SESSION_STORE
        )
    user_principal_factory = user_principal_factory or user_principal_factory_for(settings.ROLE_CLAIM_MODE)
    token_revoker = RevokingOAuthTokensHandler(client) if settings.REVOKE_TOKENS_ON_LOGOUT else None

    redirector = AuthenticationRedirector(
        configuration,
        settings.CALLBACK_PATH,
        dpop_support=dpop_support,
        request_sender=request_sender,
        scopes=settings.extra_scopes_list,
    )
    callback_handler = CallbackHandler(
        client,
        IDTokenValidator(configuration, client, leeway=settings.CLOCK_SKEW_SECONDS),
        user_principal_factory=user_principal_factory,
    )

    if logged_out_session_store is not NULL_LOGGED_OUT_SESSION_STORE:
        listener = BackchannelLogoutSessionListener(logged_out_session_store)
        session_backend.add_listener(listener)
        callback_handler.add_post_authentication_hook(listener.user_authenticated)

    backchannel_logout_handler = BackchannelLogoutHandler(
        LogoutTokenValidator(
            configuration,
            client,
            require_typed_tokens=settings.LOGOUT_TOKEN_REQUIRE_TYPED,
            decryption_key=logout_token_decryption_key,
            leeway=settings.CLOCK_SKEW_SECONDS,
        ),
        logged_out_session_store,
    )
    logout_initiator = LogoutInitiator(
        configuration,
        post_logout_redirect_path=settings.POST_LOGOUT_REDIRECT_PATH,
        use_logout_state=settings.USE_LOGOUT_STATE,
        token_revoker=token_revoker,
    )

    # =========================================================================
    # Application
    # =========================================================================

    app = FastAPI(
        title="OIDC Relying Party",
        description="OpenID Connect relying-party middleware",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.rp = AppState(
        settings,
        configuration,
        client,
        session_backend,
        logged_out_session_store,
        token_revoker,
    )

    ungated_paths = list(settings.ungated_paths) + list(public_paths)
    authenticated = IsAuthenticated(redirector)
    require_admin = RequireAuthorization(HasRole(admin_role, authenticated))

    # Added innermost first: the last middleware added runs first
    app.add_middleware(
        AuthorizationGateMiddleware,
        strategy=authenticated,
        protected_paths=protected_paths,
        ungated_paths=ungated_paths,
    )
    app.add_middleware(
        SessionPrincipalBinderMiddleware,
        user_principal_factory=user_principal_factory,
        logged_out_session_store=logged_out_session_store,
    )
    app.add_middleware(
        SessionMiddleware,
        backend=session_backend,
        secret_key=settings.SESSION_SECRET,
        cookie_name=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        https_only=settings.COOKIE_SECURE,
    )
    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(
        build_auth_router(
            settings,
            login_handler=LoginHandler(redirector),
            callback_handler=callback_handler,
            logout_initiator=logout_initiator,
            logout_callback_handler=LogoutCallbackHandler(),
            backchannel_logout_handler=backchannel_logout_handler,
        )
    )
    register_exception_handlers(app, debug=settings.LOG_LEVEL == "DEBUG")

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            Service status and the configured issuer
        """
        return HealthResponse(status="ok", issuer=configuration.issuer)

    @app.get("/", tags=["Example"])
    async def root(principal: UserPrincipal = Depends(require_user_principal)) -> Dict[str, Any]:
        return {
            "message": f"Hello, {principal.claims.get('name') or principal.name}",
            "logout": {"method": "POST", "path": settings.LOGOUT_PATH},
        }

    @app.get("/me", tags=["Example"])
    async def me(request: Request, principal: UserPrincipal = Depends(require_user_principal)) -> Dict[str, Any]:
        """
        Return the authenticated user's claims.
        """
        return {
            "name": principal.name,
            "remote_user": request.state.remote_user,
            "claims": principal.claims,
        }

    @app.get("/admin", tags=["Example"])
    async def admin(principal: UserPrincipal = Depends(require_admin)) -> Dict[str, Any]:
        return {"name": principal.name, "role": admin_role}

    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m oidc_rp.main
    """
    settings = get_settings()

    uvicorn.run(
        "oidc_rp.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
