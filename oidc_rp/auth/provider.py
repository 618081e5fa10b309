"""
OpenID Provider configuration.

Holds what the relying party knows about its OP: the discovered metadata,
the client id, and how the client authenticates at the token endpoint.
Discovery runs once at start-up and is synchronous; everything on the
request path is async.
"""

import base64
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
import jwt
from pydantic import ValidationError

from oidc_rp.config import Settings
from oidc_rp.errors import ProviderRequestError, ProviderValidationError
from oidc_rp.models import ProviderMetadata

logger = logging.getLogger(__name__)


# =============================================================================
# Discovery
# =============================================================================

def discover_provider_metadata(issuer: str, timeout: float = 10.0) -> ProviderMetadata:
    """
    Fetch and validate the OP discovery document.

    Args:
        issuer: Issuer identifier
        timeout: Request timeout in seconds

    Returns:
        Parsed provider metadata

    Raises:
        ProviderRequestError: If the discovery document cannot be fetched
        ProviderValidationError: If it is invalid or its issuer does not match
    """
    discovery_url = f"{issuer.rstrip('/')}/.well-known/openid-configuration"

    try:
        response = httpx.get(discovery_url, timeout=timeout)
        response.raise_for_status()
        document = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise ProviderRequestError(f"Unable to fetch provider metadata from {discovery_url}") from e

    try:
        metadata = ProviderMetadata.model_validate(document)
    except ValidationError as e:
        raise ProviderValidationError("Invalid provider metadata") from e

    if metadata.issuer.rstrip("/") != issuer.rstrip("/"):
        raise ProviderValidationError(
            f"Issuer mismatch in provider metadata: expected {issuer}, got {metadata.issuer}"
        )

    logger.info(
        "Discovered OpenID Provider metadata",
        extra={"issuer": metadata.issuer, "end_session": bool(metadata.end_session_endpoint)},
    )
    return metadata


# =============================================================================
# Client Authentication
# =============================================================================

class ClientAuthentication:
    """
    Adds client credentials to a request made to the OP.

    Subclasses mutate the form data and headers in place. apply() is called
    once per request so assertion-based methods can mint a fresh assertion.
    """

    def __init__(self, client_id: str):
        self.client_id = client_id

    def apply(self, data: Dict[str, str], headers: Dict[str, str], audience: str) -> None:
        raise NotImplementedError


class NoClientAuthentication(ClientAuthentication):
    """Public client: only identifies itself."""

    def apply(self, data: Dict[str, str], headers: Dict[str, str], audience: str) -> None:
        data["client_id"] = self.client_id


class ClientSecretBasic(ClientAuthentication):
    """HTTP Basic authentication with form-urlencoded credentials (RFC 6749 2.3.1)."""

    def __init__(self, client_id: str, client_secret: str):
        super().__init__(client_id)
        self.client_secret = client_secret

    def apply(self, data: Dict[str, str], headers: Dict[str, str], audience: str) -> None:
        credentials = f"{quote(self.client_id, safe='')}:{quote(self.client_secret, safe='')}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {encoded}"


class ClientSecretPost(ClientAuthentication):
    def __init__(self, client_id: str, client_secret: str):
        super().__init__(client_id)
        self.client_secret = client_secret

    def apply(self, data: Dict[str, str], headers: Dict[str, str], audience: str) -> None:
        data["client_id"] = self.client_id
        data["client_secret"] = self.client_secret


class PrivateKeyJWT(ClientAuthentication):
    """
    private_key_jwt client authentication (RFC 7523).

    Args:
        client_id: Client identifier (iss and sub of the assertion)
        private_key: Signing key accepted by PyJWT (PEM string or key object)
        algorithm: JWS algorithm, e.g. RS256 or ES256
        key_id: Optional kid header
        lifetime_seconds: Assertion lifetime
    """

    def __init__(
        self,
        client_id: str,
        private_key: Any,
        algorithm: str = "RS256",
        key_id: Optional[str] = None,
        lifetime_seconds: int = 60,
    ):
        super().__init__(client_id)
        self.private_key = private_key
        self.algorithm = algorithm
        self.key_id = key_id
        self.lifetime_seconds = lifetime_seconds

    def create_assertion(self, audience: str) -> str:
        now = int(time.time())
        claims = {
            "iss": self.client_id,
            "sub": self.client_id,
            "aud": audience,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.lifetime_seconds,
        }
        headers = {"kid": self.key_id} if self.key_id else None
        return jwt.encode(claims, self.private_key, algorithm=self.algorithm, headers=headers)

    def apply(self, data: Dict[str, str], headers: Dict[str, str], audience: str) -> None:
        data["client_id"] = self.client_id
        data["client_assertion_type"] = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
        data["client_assertion"] = self.create_assertion(audience)


def client_authentication_from_settings(settings: Settings) -> ClientAuthentication:
    method = settings.OIDC_CLIENT_AUTH_METHOD
    if method == "none":
        return NoClientAuthentication(settings.OIDC_CLIENT_ID)
    if not settings.OIDC_CLIENT_SECRET:
        raise ValueError(f"OIDC_CLIENT_SECRET is required for {method}")
    if method == "client_secret_post":
        return ClientSecretPost(settings.OIDC_CLIENT_ID, settings.OIDC_CLIENT_SECRET)
    return ClientSecretBasic(settings.OIDC_CLIENT_ID, settings.OIDC_CLIENT_SECRET)


# =============================================================================
# Runtime Configuration
# =============================================================================

@dataclass(frozen=True)
class Configuration:
    """
    Everything the flows need to know about the OP registration.

    Attributes:
        provider_metadata: Discovered OP metadata
        client_id: Registered client id
        client_authentication: Token endpoint authentication
        client_secret: Shared secret, used to verify HMAC-signed tokens
    """

    provider_metadata: ProviderMetadata
    client_id: str
    client_authentication: ClientAuthentication
    client_secret: Optional[str] = None

    @property
    def issuer(self) -> str:
        return self.provider_metadata.issuer

    def authenticate(self, data: Dict[str, str], audience: Optional[str] = None) -> Tuple[Dict[str, str], Dict[str, str]]:
        """
        Return copies of form data and headers with client credentials added.
        """
        data = dict(data)
        headers: Dict[str, str] = {}
        self.client_authentication.apply(data, headers, audience or self.issuer)
        return data, headers

    @classmethod
    def from_settings(cls, settings: Settings, metadata: Optional[ProviderMetadata] = None) -> "Configuration":
        """
        Build the runtime configuration, discovering the OP if needed.
        """
        if metadata is None:
            metadata = discover_provider_metadata(
                settings.issuer_str, timeout=settings.HTTP_TIMEOUT_SECONDS
            )
        return cls(
            provider_metadata=metadata,
            client_id=settings.OIDC_CLIENT_ID,
            client_authentication=client_authentication_from_settings(settings),
            client_secret=settings.OIDC_CLIENT_SECRET,
        )
