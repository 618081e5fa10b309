"""
Data Models Module

This module defines Pydantic models for the state carried across the
OpenID Connect round trips, the provider metadata, and the JSON error
envelope returned by the middleware.

Models are organized by functional area:
- Flow state models (pending authentication / logout round trips)
- Session models (tokens and user information of an established session)
- Provider models (discovery metadata, logout token claims)
- Error models
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"


# ============================================================================
# Flow State Models
# ============================================================================

class AuthenticationState(BaseModel):
    """Secrets of one in-flight authorization request, consumed at callback."""
    model_config = ConfigDict(frozen=True)

    state: str = Field(..., description="Opaque value echoed back by the OP")
    nonce: str = Field(..., description="Value the ID token must carry")
    code_verifier: str = Field(..., description="PKCE verifier matching the S256 challenge")
    return_uri: str = Field(..., description="Where to send the user once authenticated")


class LogoutState(BaseModel):
    """State of one in-flight RP-initiated logout round trip."""
    model_config = ConfigDict(frozen=True)

    state: str = Field(..., description="Opaque value echoed back by the OP")
    return_uri: str = Field(..., description="Where to send the user once logged out")


# ============================================================================
# Session Models
# ============================================================================

class OIDCTokens(BaseModel):
    """Tokens returned by the token endpoint."""
    id_token: str = Field(..., description="Serialized ID token")
    access_token: str = Field(..., description="Access token for the userinfo endpoint")
    token_type: str = Field(default="Bearer", description="Bearer or DPoP")
    refresh_token: Optional[str] = Field(None, description="Refresh token if issued")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    scope: Optional[str] = Field(None, description="Granted scopes")

    @property
    def is_dpop_bound(self) -> bool:
        return self.token_type.lower() == "dpop"


class SessionInfo(BaseModel):
    """Authentication result stored in the session after a successful callback."""
    model_config = ConfigDict(frozen=True)

    tokens: OIDCTokens = Field(..., description="Tokens from the token endpoint")
    id_token_claims: Dict[str, Any] = Field(..., description="Validated ID token claims")
    userinfo: Dict[str, Any] = Field(default_factory=dict, description="Userinfo endpoint response")
    authenticated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the callback completed",
    )

    @property
    def sid(self) -> Optional[str]:
        """OP session identifier, if the OP issued one."""
        return self.id_token_claims.get("sid")

    @property
    def subject(self) -> str:
        return self.userinfo.get("sub") or self.id_token_claims["sub"]


# ============================================================================
# Provider Models
# ============================================================================

class ProviderMetadata(BaseModel):
    """
    OpenID Provider metadata (OpenID Connect Discovery 1.0).

    Only the fields used by the middleware are declared; everything else
    the OP publishes is kept as extra attributes.
    """
    model_config = ConfigDict(extra="allow")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    userinfo_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    pushed_authorization_request_endpoint: Optional[str] = None
    id_token_signing_alg_values_supported: List[str] = Field(default_factory=lambda: ["RS256"])
    backchannel_logout_supported: bool = False
    backchannel_logout_session_supported: bool = False
    dpop_signing_alg_values_supported: Optional[List[str]] = None
    mtls_endpoint_aliases: Optional[Dict[str, str]] = None

    def resolve_mtls_endpoint_aliases(self) -> "ProviderMetadata":
        """
        Return a copy whose endpoints are replaced by their mTLS aliases.

        Used when the client authenticates (or binds tokens) with a TLS
        client certificate, in which case RFC 8705 requires talking to the
        aliased endpoints.
        """
        if not self.mtls_endpoint_aliases:
            return self

        overrides = {
            name: uri
            for name, uri in self.mtls_endpoint_aliases.items()
            if name.endswith("_endpoint") and name in type(self).model_fields
        }
        return self.model_copy(update=overrides)


class LogoutTokenClaims(BaseModel):
    """Validated claims of a back-channel logout token."""
    model_config = ConfigDict(extra="allow")

    iss: str
    aud: Any
    iat: int
    jti: str
    events: Dict[str, Any]
    sid: Optional[str] = None
    sub: Optional[str] = None
    exp: Optional[int] = None


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response."""
    error: str = Field(..., description="Error type/code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Error timestamp",
    )


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service health status")
    service: str = Field(default="oidc-rp-middleware", description="Service name")
    version: str = Field(default="1.0.0", description="Service version")
    issuer: Optional[str] = Field(None, description="Configured OpenID Provider")
