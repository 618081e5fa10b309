"""
HTTP client for the OpenID Provider endpoints.

This module handles:
- Authorization code exchange at the token endpoint
- Userinfo retrieval (JSON or application/jwt responses)
- Token revocation (RFC 7009)
- Pushed authorization requests (RFC 9126)
- Fetching and caching the provider JWKS
- DPoP proofs and the single use_dpop_nonce retry when DPoP is enabled

Every failure surfaces as ProviderRequestError; nothing is retried apart
from the DPoP nonce challenge.
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx
import jwt
from pydantic import ValidationError

from oidc_rp.auth.provider import Configuration
from oidc_rp.errors import ProviderRequestError
from oidc_rp.extensions.dpop import DPoPSupport, is_use_dpop_nonce_error
from oidc_rp.models import OIDCTokens, ProviderMetadata

logger = logging.getLogger(__name__)


def _error_code(response: httpx.Response) -> Dict[str, Optional[str]]:
    """Extract the OAuth error code/description from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return {"error": body.get("error"), "error_description": body.get("error_description")}

    challenge = response.headers.get("www-authenticate", "")
    if 'error="' in challenge:
        return {"error": challenge.split('error="', 1)[1].split('"', 1)[0], "error_description": None}

    return {"error": f"http_{response.status_code}", "error_description": None}


class OIDCClient:
    """
    Async client for one OpenID Provider.

    Args:
        configuration: Provider metadata and client registration
        http_client: Shared httpx.AsyncClient (one is created if omitted)
        dpop_support: Enables DPoP-bound token requests
        timeout: Timeout for requests made with the owned client
        jwks_cache_seconds: How long a fetched JWKS is reused
    """

    def __init__(
        self,
        configuration: Configuration,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        dpop_support: Optional[DPoPSupport] = None,
        timeout: float = 10.0,
        jwks_cache_seconds: int = 3600,
    ):
        self.configuration = configuration
        self.dpop_support = dpop_support
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._jwks_cache_seconds = jwks_cache_seconds
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0

    @property
    def metadata(self) -> ProviderMetadata:
        return self.configuration.provider_metadata

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # =========================================================================
    # Transport
    # =========================================================================

    async def _post_form(self, uri: str, data: Dict[str, str], *, use_dpop: bool = False) -> httpx.Response:
        """
        POST an authenticated form to an OP endpoint.

        Client credentials (and the DPoP proof) are regenerated for the
        nonce retry so assertions are never replayed.
        """
        dpop = self.dpop_support if use_dpop else None

        for attempt in (1, 2):
            form, headers = self.configuration.authenticate(data)
            headers["Accept"] = "application/json"
            if dpop is not None:
                headers["DPoP"] = dpop.create_proof("POST", uri)

            try:
                response = await self.http_client.post(uri, data=form, headers=headers)
            except httpx.HTTPError as e:
                raise ProviderRequestError(f"Request to {uri} failed: {type(e).__name__}") from e

            if dpop is not None:
                fresh_nonce = dpop.update_nonce(uri, response)
                if attempt == 1 and fresh_nonce and is_use_dpop_nonce_error(response):
                    logger.debug("Retrying with DPoP nonce", extra={"uri": uri})
                    continue
            return response

        return response

    @staticmethod
    def _json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderRequestError(f"Invalid {what} response: not JSON") from e
        if not isinstance(body, dict):
            raise ProviderRequestError(f"Invalid {what} response: not a JSON object")
        return body

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def exchange_authorization_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> OIDCTokens:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            redirect_uri: Redirect URI sent in the authorization request
            code_verifier: PKCE verifier

        Returns:
            Parsed token response (always contains an ID token)

        Raises:
            ProviderRequestError: On I/O failure, error response or invalid body
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        response = await self._post_form(self.metadata.token_endpoint, payload, use_dpop=True)

        if not response.is_success:
            error = _error_code(response)
            raise ProviderRequestError(
                f"Token request returned error: {error['error']}",
                details=error,
            )

        body = self._json_object(response, "token")
        try:
            return OIDCTokens.model_validate(body)
        except ValidationError as e:
            raise ProviderRequestError("Invalid token response: missing id_token or access_token") from e

    # =========================================================================
    # Userinfo Endpoint
    # =========================================================================

    async def fetch_userinfo(self, tokens: OIDCTokens) -> Dict[str, Any]:
        """
        Fetch the userinfo claims with the access token.

        Returns:
            Userinfo claims, or an empty dict if the OP has no userinfo endpoint

        Raises:
            ProviderRequestError: On I/O failure or error response
        """
        uri = self.metadata.userinfo_endpoint
        if not uri:
            logger.debug("Provider has no userinfo endpoint; using ID token claims only")
            return {}

        dpop = self.dpop_support if tokens.is_dpop_bound else None
        scheme = "DPoP" if dpop is not None else "Bearer"

        for attempt in (1, 2):
            headers = {
                "Authorization": f"{scheme} {tokens.access_token}",
                "Accept": "application/json, application/jwt",
            }
            if dpop is not None:
                headers["DPoP"] = dpop.create_proof("GET", uri, access_token=tokens.access_token)

            try:
                response = await self.http_client.get(uri, headers=headers)
            except httpx.HTTPError as e:
                raise ProviderRequestError(f"UserInfo request failed: {type(e).__name__}") from e

            if dpop is not None:
                fresh_nonce = dpop.update_nonce(uri, response)
                if attempt == 1 and fresh_nonce and is_use_dpop_nonce_error(response):
                    continue
            break

        if not response.is_success:
            error = _error_code(response)
            raise ProviderRequestError(
                f"UserInfo request returned error: {error['error']}",
                details=error,
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type == "application/jwt":
            # Received directly from the userinfo endpoint over TLS in exchange for our token
            try:
                return jwt.decode(response.text, options={"verify_signature": False})
            except jwt.InvalidTokenError as e:
                raise ProviderRequestError("Invalid UserInfo response: malformed JWT") from e

        return self._json_object(response, "UserInfo")

    # =========================================================================
    # Revocation Endpoint
    # =========================================================================

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """
        Revoke a token (RFC 7009).

        Raises:
            ProviderRequestError: If the OP has no revocation endpoint or the request fails
        """
        uri = self.metadata.revocation_endpoint
        if not uri:
            raise ProviderRequestError("Provider does not advertise a revocation endpoint")

        payload = {"token": token}
        if token_type_hint:
            payload["token_type_hint"] = token_type_hint

        response = await self._post_form(uri, payload)
        if not response.is_success:
            error = _error_code(response)
            raise ProviderRequestError(
                f"Revocation request returned error: {error['error']}",
                details=error,
            )

    # =========================================================================
    # Pushed Authorization Request Endpoint
    # =========================================================================

    async def push_authorization_request(self, params: Dict[str, str]) -> Dict[str, Any]:
        """
        Push authorization request parameters (RFC 9126).

        Returns:
            The PAR response: request_uri and expires_in

        Raises:
            ProviderRequestError: If the OP has no PAR endpoint or the push fails
        """
        uri = self.metadata.pushed_authorization_request_endpoint
        if not uri:
            raise ProviderRequestError("Provider does not advertise a pushed authorization request endpoint")

        response = await self._post_form(uri, params)
        if not response.is_success:
            error = _error_code(response)
            raise ProviderRequestError(
                f"Pushed authorization request returned error: {error['error']}",
                details=error,
            )

        body = self._json_object(response, "pushed authorization request")
        if not body.get("request_uri"):
            raise ProviderRequestError("Invalid pushed authorization request response: missing request_uri")
        return body

    # =========================================================================
    # JWKS
    # =========================================================================

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider JWKS with caching.

        Args:
            force_refresh: Bypass the cache (used when a kid is unknown)

        Returns:
            JWKS document containing keys

        Raises:
            ProviderRequestError: If the JWKS endpoint is unreachable or invalid
        """
        now = time.monotonic()
        if not force_refresh and self._jwks and (now - self._jwks_fetched_at) < self._jwks_cache_seconds:
            return self._jwks

        try:
            response = await self.http_client.get(self.metadata.jwks_uri)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderRequestError(f"Unable to fetch JWKS: {type(e).__name__}") from e

        jwks = self._json_object(response, "JWKS")
        if not isinstance(jwks.get("keys"), list):
            raise ProviderRequestError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks
        self._jwks_fetched_at = now
        logger.debug(f"Fetched JWKS with {len(jwks['keys'])} keys")
        return jwks
