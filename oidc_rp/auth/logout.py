"""
RP-initiated logout.

LogoutInitiator ends the local session first (always, whether or not
back-channel logout is configured), optionally schedules token revocation
in the background, and sends the browser to the OP end-session endpoint.
When configured to, it also starts a logout round trip protected by its
own single-use LogoutState, completed by LogoutCallbackHandler.
"""

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

from fastapi import Request
from starlette.responses import Response

from oidc_rp.auth.provider import Configuration
from oidc_rp.auth.tokens import RevokingOAuthTokensHandler
from oidc_rp.auth.utils import (
    generate_state,
    get_return_to_parameter,
    is_navigation,
    is_same_origin,
    read_parameters,
    request_origin,
    send_redirect,
)
from oidc_rp.errors import ClientProtocolError, OIDCError, error_response, log_oidc_error
from oidc_rp.models import LogoutState
from oidc_rp.session.middleware import get_session, invalidate_session

logger = logging.getLogger(__name__)


# =============================================================================
# Logout Initiation
# =============================================================================

class LogoutInitiator:
    """
    Handles the logout form POST.

    Args:
        configuration: Provider metadata and client registration
        post_logout_redirect_path: Path the OP sends the user back to
        use_logout_state: Protect the return trip with a state parameter
        token_revoker: Revokes the session's tokens in the background
    """

    def __init__(
        self,
        configuration: Configuration,
        *,
        post_logout_redirect_path: Optional[str] = None,
        use_logout_state: bool = False,
        token_revoker: Optional[RevokingOAuthTokensHandler] = None,
    ):
        self.configuration = configuration
        self.post_logout_redirect_path = post_logout_redirect_path
        self.use_logout_state = use_logout_state
        self.token_revoker = token_revoker

    async def handle(self, request: Request) -> Response:
        if not is_navigation(request):
            e = ClientProtocolError("Logout must be a top-level navigation")
            log_oidc_error(e, request)
            return error_response(e)

        if not is_same_origin(request):
            logger.warning("Ignoring cross-origin logout request", extra={"path": request.url.path})
            return send_redirect("/")

        session = get_session(request)
        if session is None:
            return send_redirect("/")

        session_info = session.session_info
        invalidate_session(request)

        if session_info is None:
            return send_redirect("/")

        if self.token_revoker is not None:
            self.token_revoker.revoke_tokens_async(session_info.tokens)

        params = await read_parameters(request)
        return_to = get_return_to_parameter(request, params)

        end_session_endpoint = self.configuration.provider_metadata.end_session_endpoint
        if not end_session_endpoint:
            logger.info("Provider has no end_session_endpoint; logged out locally only")
            return send_redirect(return_to)

        query = {
            "id_token_hint": session_info.tokens.id_token,
            "client_id": self.configuration.client_id,
        }
        if self.post_logout_redirect_path:
            query["post_logout_redirect_uri"] = request_origin(request) + self.post_logout_redirect_path
            if self.use_logout_state:
                state = generate_state()
                get_session(request, create=True).pending_logout = LogoutState(
                    state=state,
                    return_uri=return_to,
                )
                query["state"] = state

        separator = "&" if "?" in end_session_endpoint else "?"
        logger.info("Redirecting to OpenID Provider for logout", extra={"sub": session_info.subject})
        return send_redirect(f"{end_session_endpoint}{separator}{urlencode(query)}")


# =============================================================================
# Logout Callback
# =============================================================================

class LogoutCallbackHandler:
    """
    Completes the RP-initiated logout round trip.

    Without a pending LogoutState (or with a mismatching state) the request
    is rejected with 400.
    """

    async def handle(self, request: Request) -> Response:
        try:
            return await self._complete_logout(request)
        except OIDCError as e:
            log_oidc_error(e, request)
            return error_response(e)

    async def _complete_logout(self, request: Request) -> Response:
        if not is_navigation(request):
            raise ClientProtocolError("Logout response must be a top-level navigation")

        session = get_session(request)
        pending = session.take_pending_logout() if session is not None else None
        if pending is None:
            raise ClientProtocolError("Missing saved state from logout request initiation")

        params = await read_parameters(request)
        if not secrets.compare_digest(params.get("state") or "", pending.state):
            raise ClientProtocolError("State mismatch")

        return send_redirect(pending.return_uri)
