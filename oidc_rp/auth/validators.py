"""
Validation of JWTs issued by the OpenID Provider.

This module handles:
- Resolving signing keys from the provider JWKS (refreshing once when a
  kid is unknown, as happens after key rotation)
- ID token validation: signature, issuer, audience, expiry and nonce
- Back-channel logout token validation, including encrypted (nested)
  tokens and the logout+jwt type header

Signature checks are done with PyJWT; JWE decryption with python-jose.
ID token failures raise ProviderValidationError (500), logout token
failures raise LogoutTokenError (400).
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

import jwt
from jose import jwe
from jose.exceptions import JOSEError
from pydantic import ValidationError

from oidc_rp.auth.provider import Configuration
from oidc_rp.errors import LogoutTokenError, ProviderValidationError
from oidc_rp.models import BACKCHANNEL_LOGOUT_EVENT, LogoutTokenClaims

logger = logging.getLogger(__name__)

LOGOUT_TOKEN_TYPE = "logout+jwt"


class KeySource(Protocol):
    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        ...


# =============================================================================
# Key Resolution
# =============================================================================

class SigningKeyResolver:
    """
    Find the key that verifies a token, given its JOSE header.

    HMAC-signed tokens are verified with the client secret; everything else
    with the matching key from the provider JWKS.
    """

    def __init__(self, key_source: KeySource, client_secret: Optional[str] = None):
        self.key_source = key_source
        self.client_secret = client_secret

    @staticmethod
    def _select_key(jwks: Dict[str, Any], kid: Optional[str], alg: str) -> Optional[Any]:
        for jwk in jwks.get("keys", []):
            if jwk.get("use", "sig") != "sig":
                continue
            if kid is not None and jwk.get("kid") != kid:
                continue
            if jwk.get("alg") and jwk["alg"] != alg:
                continue
            try:
                return jwt.PyJWK(jwk, algorithm=alg).key
            except jwt.PyJWTError:
                continue
        return None

    async def resolve(self, header: Dict[str, Any]) -> Any:
        """
        Args:
            header: Unverified JOSE header of the token

        Returns:
            Verification key usable with jwt.decode

        Raises:
            jwt.InvalidTokenError: If no key matches
            ProviderRequestError: If the JWKS cannot be fetched
        """
        alg = header.get("alg", "")
        if alg.startswith("HS"):
            if not self.client_secret:
                raise jwt.InvalidTokenError("HMAC-signed token but no client secret is configured")
            return self.client_secret.encode("utf-8")

        kid = header.get("kid")
        key = self._select_key(await self.key_source.fetch_jwks(), kid, alg)
        if key is None:
            # Try refreshing JWKS in case keys were rotated
            key = self._select_key(await self.key_source.fetch_jwks(force_refresh=True), kid, alg)
        if key is None:
            raise jwt.InvalidTokenError(f"Unable to find matching signing key in JWKS (kid={kid})")
        return key


def _allowed_algorithms(configuration: Configuration) -> List[str]:
    algorithms = [
        alg
        for alg in configuration.provider_metadata.id_token_signing_alg_values_supported
        if alg != "none"
    ]
    if not configuration.client_secret:
        algorithms = [alg for alg in algorithms if not alg.startswith("HS")]
    return algorithms


# =============================================================================
# ID Tokens
# =============================================================================

class IDTokenValidator:
    """
    Validates ID tokens returned by the token endpoint.

    Args:
        configuration: Provider metadata and client registration
        key_source: Object exposing fetch_jwks() (usually the OIDCClient)
        leeway: Clock skew tolerance in seconds
    """

    def __init__(self, configuration: Configuration, key_source: KeySource, *, leeway: int = 30):
        self.configuration = configuration
        self.leeway = leeway
        self.algorithms = _allowed_algorithms(configuration)
        self._keys = SigningKeyResolver(key_source, configuration.client_secret)

    async def validate(self, id_token: str, expected_nonce: str) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Args:
            id_token: Serialized ID token
            expected_nonce: Nonce sent in the authorization request

        Returns:
            Verified ID token claims

        Raises:
            ProviderValidationError: For any signature, claim or nonce failure
            ProviderRequestError: If the JWKS cannot be fetched
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as e:
            raise ProviderValidationError("Invalid ID token: malformed header") from e

        alg = header.get("alg")
        if alg not in self.algorithms:
            raise ProviderValidationError(f"Invalid ID token: unexpected signing algorithm {alg}")

        try:
            key = await self._keys.resolve(header)
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[alg],
                audience=self.configuration.client_id,
                issuer=self.configuration.issuer,
                leeway=self.leeway,
                options={"require": ["iss", "sub", "aud", "exp", "iat"]},
            )
        except jwt.PyJWTError as e:
            raise ProviderValidationError(f"Invalid ID token: {e}") from e

        audience = claims["aud"]
        if isinstance(audience, list) and len(audience) > 1 and claims.get("azp") != self.configuration.client_id:
            raise ProviderValidationError("Invalid ID token: azp does not match the client id")

        if claims.get("nonce") != expected_nonce:
            raise ProviderValidationError("Invalid ID token: nonce mismatch")

        return claims


# =============================================================================
# Logout Tokens
# =============================================================================

class LogoutTokenValidator:
    """
    Validates back-channel logout tokens (OpenID Connect Back-Channel Logout 1.0).

    Args:
        configuration: Provider metadata and client registration
        key_source: Object exposing fetch_jwks()
        require_typed_tokens: Only accept tokens whose typ header is logout+jwt
        decryption_key: Key for encrypted logout tokens (JWK dict, PEM or bytes)
        leeway: Clock skew tolerance in seconds
    """

    def __init__(
        self,
        configuration: Configuration,
        key_source: KeySource,
        *,
        require_typed_tokens: bool = False,
        decryption_key: Any = None,
        leeway: int = 30,
    ):
        self.configuration = configuration
        self.require_typed_tokens = require_typed_tokens
        self.decryption_key = decryption_key
        self.leeway = leeway
        self.algorithms = _allowed_algorithms(configuration)
        self._keys = SigningKeyResolver(key_source, configuration.client_secret)

    def _check_type(self, header: Dict[str, Any]) -> None:
        typ = header.get("typ")
        normalized = typ.lower().removeprefix("application/") if isinstance(typ, str) else typ

        if self.require_typed_tokens:
            if normalized != LOGOUT_TOKEN_TYPE:
                raise LogoutTokenError(f"Invalid logout token: typ must be {LOGOUT_TOKEN_TYPE}")
        elif normalized not in (None, LOGOUT_TOKEN_TYPE, "jwt"):
            raise LogoutTokenError(f"Invalid logout token: unexpected typ {typ}")

    def _decrypt(self, logout_token: str) -> str:
        if self.decryption_key is None:
            raise LogoutTokenError("Encrypted logout tokens are not accepted")
        try:
            self._check_type(jwe.get_unverified_header(logout_token))
            return jwe.decrypt(logout_token, self.decryption_key).decode("utf-8")
        except (JOSEError, UnicodeDecodeError) as e:
            raise LogoutTokenError("Invalid logout token: decryption failed") from e

    async def validate(self, logout_token: str) -> LogoutTokenClaims:
        """
        Verify a logout token and return its claims.

        Raises:
            LogoutTokenError: If the token is unsecured, malformed or invalid
            ProviderRequestError: If the JWKS cannot be fetched
        """
        token = logout_token.strip()
        encrypted = token.count(".") == 4
        if encrypted:
            token = self._decrypt(token)
        if token.count(".") != 2:
            raise LogoutTokenError("Invalid logout token: not a signed JWT")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise LogoutTokenError("Invalid logout token: malformed header") from e

        alg = header.get("alg")
        if not alg or alg == "none":
            raise LogoutTokenError("Unsecured logout tokens are not accepted")
        if alg not in self.algorithms:
            raise LogoutTokenError(f"Invalid logout token: unexpected signing algorithm {alg}")
        if not encrypted:
            self._check_type(header)

        try:
            key = await self._keys.resolve(header)
            claims = jwt.decode(
                token,
                key,
                algorithms=[alg],
                audience=self.configuration.client_id,
                issuer=self.configuration.issuer,
                leeway=self.leeway,
                options={"require": ["iss", "aud", "iat", "jti"]},
            )
        except jwt.PyJWTError as e:
            raise LogoutTokenError(f"Invalid logout token: {e}") from e

        events = claims.get("events")
        if not isinstance(events, dict) or not isinstance(events.get(BACKCHANNEL_LOGOUT_EVENT), dict):
            raise LogoutTokenError("Invalid logout token: missing back-channel logout event")

        if not claims.get("sid") and not claims.get("sub"):
            raise LogoutTokenError("Invalid logout token: sid or sub is required")

        if "nonce" in claims:
            raise LogoutTokenError("Invalid logout token: nonce is not allowed")

        try:
            return LogoutTokenClaims.model_validate(claims)
        except ValidationError as e:
            raise LogoutTokenError("Invalid logout token: unexpected claim types") from e
