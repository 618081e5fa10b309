"""
Explicit login entry point.

Lets pages offer a "Sign in" link or form without protecting the page
itself. The return-to parameter is only honoured for same-origin targets.
"""

import logging

from fastapi import Request
from starlette.responses import Response

from oidc_rp.auth.principal import get_user_principal
from oidc_rp.auth.redirector import AuthenticationRedirector
from oidc_rp.auth.utils import (
    get_return_to_parameter,
    is_navigation,
    is_same_origin,
    read_parameters,
    send_redirect,
)
from oidc_rp.errors import ClientProtocolError, OIDCError, error_response, log_oidc_error

logger = logging.getLogger(__name__)


class LoginHandler:
    def __init__(self, redirector: AuthenticationRedirector):
        self.redirector = redirector

    async def handle(self, request: Request) -> Response:
        """
        Start authentication, then come back to the return-to target.

        Cross-origin requests and already authenticated users are sent
        straight to the target instead.
        """
        try:
            if not is_navigation(request):
                raise ClientProtocolError("Login must be a top-level navigation")

            params = await read_parameters(request)
            return_to = get_return_to_parameter(request, params)

            if request.method == "POST" and not is_same_origin(request):
                logger.warning("Ignoring cross-origin login request", extra={"path": request.url.path})
                return send_redirect(return_to)

            if get_user_principal(request) is not None:
                return send_redirect(return_to)

            return await self.redirector.redirect(request, return_to)
        except OIDCError as e:
            log_oidc_error(e, request)
            return error_response(e)
