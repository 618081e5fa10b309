"""
Authentication response (redirect URI) handling.

The callback completes the authorization code flow in a fixed sequence
where every failure ends the request immediately:

1. Reject anything but a top-level navigation
2. Parse the response (success or error)
3. Take the pending AuthenticationState out of the session (single use,
   whatever happens next)
4. Compare state
5. Reject OP error responses
6. Exchange code + PKCE verifier for tokens
7. Validate the ID token, including the nonce
8. Fetch userinfo
9. Rotate the session id, store SessionInfo, run the post-authentication
   hooks, and redirect to where the user was going

Client mistakes (1-5) answer 400; OP and network failures (6-8) answer 500.
"""

import logging
import secrets
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.responses import Response

from oidc_rp.auth.client import OIDCClient
from oidc_rp.auth.principal import SimpleUserPrincipalFactory, UserPrincipalFactory
from oidc_rp.auth.tokens import OAuthTokensHandler
from oidc_rp.auth.utils import is_navigation, read_parameters, request_origin, send_redirect
from oidc_rp.auth.validators import IDTokenValidator
from oidc_rp.errors import (
    ClientProtocolError,
    OIDCError,
    ProviderValidationError,
    error_response,
    log_oidc_error,
)
from oidc_rp.models import SessionInfo
from oidc_rp.session.middleware import get_session, rotate_session_id
from oidc_rp.session.models import Session

logger = logging.getLogger(__name__)

PostAuthenticationHook = Callable[[SessionInfo, Session], None]


class CallbackHandler:
    """
    Completes the authorization code flow.

    Args:
        client: OP client (token and userinfo endpoints)
        id_token_validator: ID token validation
        user_principal_factory: Its user_authenticated hook runs on success
        tokens_handler: Optional handler receiving the fresh tokens
        post_authentication_hooks: Extra callables run with (session_info, session)
    """

    def __init__(
        self,
        client: OIDCClient,
        id_token_validator: IDTokenValidator,
        *,
        user_principal_factory: Optional[UserPrincipalFactory] = None,
        tokens_handler: Optional[OAuthTokensHandler] = None,
        post_authentication_hooks: Iterable[PostAuthenticationHook] = (),
    ):
        self.client = client
        self.id_token_validator = id_token_validator
        self.user_principal_factory = user_principal_factory or SimpleUserPrincipalFactory()
        self.tokens_handler = tokens_handler
        self.post_authentication_hooks = list(post_authentication_hooks)

    def add_post_authentication_hook(self, hook: PostAuthenticationHook) -> None:
        self.post_authentication_hooks.append(hook)

    async def handle(self, request: Request) -> Response:
        try:
            return await self._complete_authentication(request)
        except OIDCError as e:
            log_oidc_error(e, request)
            return error_response(e)

    async def _complete_authentication(self, request: Request) -> Response:
        if not is_navigation(request):
            raise ClientProtocolError("Authentication response must be a top-level navigation")

        params = await read_parameters(request)
        if params.get("error"):
            code = None
        elif params.get("code"):
            code = params["code"]
        else:
            raise ClientProtocolError("Invalid authentication response: missing code or error")

        session = get_session(request)
        pending = session.take_pending_auth() if session is not None else None
        if pending is None:
            raise ClientProtocolError("Missing saved state from authorization request initiation")

        returned_state = params.get("state") or ""
        if not secrets.compare_digest(returned_state, pending.state):
            raise ClientProtocolError("State mismatch")

        if code is None:
            raise ClientProtocolError(
                f"Authentication error: {params['error']}",
                error=params["error"],
                details={"error_description": params.get("error_description")},
            )

        redirect_uri = request_origin(request) + request.url.path
        tokens = await self.client.exchange_authorization_code(code, redirect_uri, pending.code_verifier)

        id_token_claims = await self.id_token_validator.validate(tokens.id_token, pending.nonce)

        userinfo = await self.client.fetch_userinfo(tokens)
        if userinfo and userinfo.get("sub") != id_token_claims["sub"]:
            raise ProviderValidationError("UserInfo subject does not match the ID token subject")

        session = rotate_session_id(request)
        session_info = SessionInfo(tokens=tokens, id_token_claims=id_token_claims, userinfo=userinfo)
        session.session_info = session_info

        if self.tokens_handler is not None:
            self.tokens_handler.tokens_acquired(tokens, session)
        self.user_principal_factory.user_authenticated(session_info, session)
        for hook in self.post_authentication_hooks:
            hook(session_info, session)

        logger.info(
            "Authentication completed",
            extra={"sub": id_token_claims["sub"], "has_sid": session_info.sid is not None},
        )
        return send_redirect(pending.return_uri)
