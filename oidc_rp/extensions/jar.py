"""
JWT-Secured Authorization Requests (RFC 9101).

The authorization request parameters are signed into a request object
(typ oauth-authz-req+jwt) passed by value in the request parameter; only
client_id travels next to it. Subclasses can encrypt the request object by
overriding maybe_encrypt().
"""

import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import jwt

from oidc_rp.auth.provider import Configuration
from oidc_rp.auth.redirector import AuthorizationRequest

REQUEST_OBJECT_TYPE = "oauth-authz-req+jwt"


class JWTAuthorizationRequestHelper:
    """
    AuthorizationRequestSender wrapping the request in a signed JWT.

    Args:
        configuration: Provider metadata and client registration
        private_key: Signing key accepted by PyJWT
        algorithm: JWS algorithm (e.g. RS256, ES256, PS256)
        key_id: kid header, when the OP knows several client keys
        lifetime_seconds: Request object lifetime
    """

    def __init__(
        self,
        configuration: Configuration,
        private_key: Any,
        algorithm: str = "RS256",
        key_id: Optional[str] = None,
        lifetime_seconds: int = 300,
    ):
        if algorithm == "none":
            raise ValueError("Request objects must be signed")
        self.configuration = configuration
        self.private_key = private_key
        self.algorithm = algorithm
        self.key_id = key_id
        self.lifetime_seconds = lifetime_seconds

    def create_request_object(self, params: Dict[str, str]) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = dict(params)
        claims.update(
            {
                "iss": self.configuration.client_id,
                "aud": self.configuration.issuer,
                "client_id": self.configuration.client_id,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "nbf": now,
                "exp": now + self.lifetime_seconds,
            }
        )
        headers = {"typ": REQUEST_OBJECT_TYPE}
        if self.key_id:
            headers["kid"] = self.key_id
        return jwt.encode(claims, self.private_key, algorithm=self.algorithm, headers=headers)

    def maybe_encrypt(self, request_object: str) -> str:
        """Hook for encrypting the signed request object; returns it unchanged."""
        return request_object

    async def build_redirect_uri(self, authorization_request: AuthorizationRequest) -> str:
        request_object = self.maybe_encrypt(self.create_request_object(authorization_request.params))
        query = {
            "client_id": self.configuration.client_id,
            "request": request_object,
        }
        separator = "&" if "?" in authorization_request.endpoint else "?"
        return f"{authorization_request.endpoint}{separator}{urlencode(query)}"
