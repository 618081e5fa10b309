"""
Authentication routes.

Registers the relying-party endpoints on an APIRouter:

- LOGIN_PATH (GET, POST): start authentication explicitly
- CALLBACK_PATH (GET, POST): authentication response (query or form_post)
- LOGOUT_PATH (POST): RP-initiated logout
- LOGOUT_CALLBACK_PATH (GET, POST): return from the OP after logout
- BACKCHANNEL_LOGOUT_PATH (POST): logout tokens pushed by the OP

All of them are listed in Settings.ungated_paths so the authorization gate
never intercepts them.
"""

from fastapi import APIRouter, Request
from starlette.responses import Response

from oidc_rp.auth.backchannel import BackchannelLogoutHandler
from oidc_rp.auth.callback import CallbackHandler
from oidc_rp.auth.login import LoginHandler
from oidc_rp.auth.logout import LogoutCallbackHandler, LogoutInitiator
from oidc_rp.config import Settings


def build_auth_router(
    settings: Settings,
    *,
    login_handler: LoginHandler,
    callback_handler: CallbackHandler,
    logout_initiator: LogoutInitiator,
    logout_callback_handler: LogoutCallbackHandler,
    backchannel_logout_handler: BackchannelLogoutHandler,
) -> APIRouter:
    """
    Build the router exposing the authentication endpoints.

    Args:
        settings: Route layout
        login_handler: Explicit login
        callback_handler: Authentication response handling
        logout_initiator: RP-initiated logout
        logout_callback_handler: Post-logout return
        backchannel_logout_handler: Back-channel logout

    Returns:
        APIRouter to include in the application
    """
    router = APIRouter(tags=["authentication"])

    # =========================================================================
    # Login
    # =========================================================================

    @router.api_route(settings.LOGIN_PATH, methods=["GET", "POST"], include_in_schema=False)
    async def login(request: Request) -> Response:
        return await login_handler.handle(request)

    @router.api_route(settings.CALLBACK_PATH, methods=["GET", "POST"], include_in_schema=False)
    async def callback(request: Request) -> Response:
        return await callback_handler.handle(request)

    # =========================================================================
    # Logout
    # =========================================================================

    @router.post(settings.LOGOUT_PATH, include_in_schema=False)
    async def logout(request: Request) -> Response:
        return await logout_initiator.handle(request)

    @router.api_route(settings.LOGOUT_CALLBACK_PATH, methods=["GET", "POST"], include_in_schema=False)
    async def logout_callback(request: Request) -> Response:
        return await logout_callback_handler.handle(request)

    @router.post(settings.BACKCHANNEL_LOGOUT_PATH)
    async def backchannel_logout(request: Request) -> Response:
        """
        Back-channel logout endpoint (application/x-www-form-urlencoded logout_token).
        """
        return await backchannel_logout_handler.handle(request)

    return router
