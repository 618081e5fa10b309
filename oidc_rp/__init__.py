"""
OpenID Connect relying-party middleware for FastAPI/Starlette.

Drives the authorization code + PKCE flow, keeps per-session
authentication and logout state, tracks back-channel logout, and exposes
the authenticated principal to downstream handlers.
"""

__version__ = "1.0.0"
