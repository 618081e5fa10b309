"""
Authentication Package

This package implements the OpenID Connect relying party: the
authorization code + PKCE flow, RP-initiated and back-channel logout,
the authenticated principal, and the authorization gate.

Modules:
- provider: OP metadata discovery, client authentication, runtime configuration
- client: HTTP calls to the OP (token, userinfo, revocation, PAR, JWKS)
- validators: ID token and logout token validation
- redirector: authorization request construction
- callback: authentication response handling
- login / logout / backchannel: the remaining endpoints
- logged_out_store: registry of OP sessions logged out through the back channel
- principal: user principal and the per-request principal binder
- gate: authorization strategies and the gate middleware
- tokens: token revocation
- routes: APIRouter wiring of the endpoints

The authentication flow:
1. The gate (or /auth/login) redirects the browser to the OP
2. The user authenticates with the OP
3. The OP redirects back to the callback with a code
4. The callback exchanges the code, validates tokens, fetches userinfo
   and establishes the session
5. The principal binder exposes the user on every subsequent request
"""

from .routes import build_auth_router

__all__ = [
    "build_auth_router",
]
