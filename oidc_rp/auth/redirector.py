"""
Authorization request construction.

The redirector starts the authorization code flow: it generates the
per-flow secrets, stores them in the session as the single pending
AuthenticationState, and sends the browser to the OP. How the request
reaches the OP (plain front-channel parameters, pushed with PAR, or signed
with JAR) is delegated to an AuthorizationRequestSender.
"""

import logging
from typing import Callable, Dict, Iterable, Optional, Protocol
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse

from oidc_rp.auth.provider import Configuration
from oidc_rp.auth.utils import (
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_state,
    request_origin,
    send_redirect,
)
from oidc_rp.extensions.dpop import DPoPSupport
from oidc_rp.models import AuthenticationState
from oidc_rp.session.middleware import get_session

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("openid", "profile", "email")


# =============================================================================
# Authorization Request
# =============================================================================

class AuthorizationRequest:
    """
    Mutable authorization request, handed to configuration callbacks and senders.

    Attributes:
        endpoint: OP authorization endpoint
        params: Request parameters (values are strings)
    """

    def __init__(self, endpoint: str, params: Optional[Dict[str, str]] = None):
        self.endpoint = endpoint
        self.params: Dict[str, str] = dict(params or {})

    @property
    def scopes(self) -> list:
        return self.params.get("scope", "").split()

    def add_scopes(self, *scopes: str) -> None:
        current = self.scopes
        current.extend(scope for scope in scopes if scope not in current)
        self.params["scope"] = " ".join(current)

    def to_uri(self) -> str:
        separator = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{separator}{urlencode(self.params)}"


class AuthorizationRequestSender(Protocol):
    """Turns an authorization request into the URI the browser is sent to."""

    async def build_redirect_uri(self, authorization_request: AuthorizationRequest) -> str:
        ...


class FrontChannelSender:
    """Default sender: all parameters in the query string."""

    async def build_redirect_uri(self, authorization_request: AuthorizationRequest) -> str:
        return authorization_request.to_uri()


# =============================================================================
# Redirector
# =============================================================================

class AuthenticationRedirector:
    """
    Starts the authorization code + PKCE flow.

    Args:
        configuration: Provider metadata and client registration
        callback_path: Path of the callback endpoint on this origin
        dpop_support: Adds dpop_jkt to bind the code to the DPoP key
        request_sender: Delivery of the request (PAR, JAR); front channel by default
        scopes: Scopes requested in addition to openid, profile and email
    """

    def __init__(
        self,
        configuration: Configuration,
        callback_path: str,
        *,
        dpop_support: Optional[DPoPSupport] = None,
        request_sender: Optional[AuthorizationRequestSender] = None,
        scopes: Iterable[str] = (),
    ):
        self.configuration = configuration
        self.callback_path = callback_path
        self.dpop_support = dpop_support
        self.request_sender = request_sender or FrontChannelSender()
        self.scopes = tuple(DEFAULT_SCOPES) + tuple(s for s in scopes if s not in DEFAULT_SCOPES)

    def callback_uri(self, request: Request) -> str:
        return request_origin(request) + self.callback_path

    async def redirect(
        self,
        request: Request,
        return_uri: str,
        configure: Optional[Callable[[AuthorizationRequest], None]] = None,
    ) -> RedirectResponse:
        """
        Redirect the browser to the OP to authenticate.

        Any pending authentication in the session is replaced once the
        request sender has produced the redirect. configure runs before the
        protocol fields are set, so it cannot override redirect_uri, state,
        nonce or the PKCE challenge.

        Args:
            request: Current request (its session is created if needed)
            return_uri: Where the callback sends the user once authenticated
            configure: Optional callback adjusting the authorization request

        Returns:
            303 redirect to the OP

        Raises:
            ProviderRequestError: If the request sender talks to the OP and fails
        """
        state = generate_state()
        nonce = generate_nonce()
        code_verifier = generate_code_verifier()

        authorization_request = AuthorizationRequest(
            self.configuration.provider_metadata.authorization_endpoint,
            {
                "response_type": "code",
                "client_id": self.configuration.client_id,
                "scope": " ".join(self.scopes),
            },
        )

        if configure is not None:
            configure(authorization_request)

        authorization_request.params.update(
            {
                "redirect_uri": self.callback_uri(request),
                "state": state,
                "nonce": nonce,
                "code_challenge": generate_code_challenge(code_verifier),
                "code_challenge_method": "S256",
            }
        )
        if self.dpop_support is not None:
            authorization_request.params["dpop_jkt"] = self.dpop_support.jkt

        location = await self.request_sender.build_redirect_uri(authorization_request)

        session = get_session(request, create=True)
        session.pending_auth = AuthenticationState(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            return_uri=return_uri,
        )

        logger.info(
            "Redirecting to OpenID Provider for authentication",
            extra={"path": request.url.path, "sender": type(self.request_sender).__name__},
        )
        return send_redirect(location)
