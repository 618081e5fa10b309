"""
Configuration module for the OIDC relying-party middleware.

This module uses Pydantic Settings to load and validate environment variables
for the OpenID Provider registration, callback/logout routes, session cookies,
back-channel logout and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provider registration, route layout, session cookie policy and logout
    behaviour are all defined here. The provider metadata itself is not:
    it is discovered from OIDC_ISSUER at start-up.
    """

    # =========================================================================
    # OpenID Provider Registration
    # =========================================================================

    OIDC_ISSUER: str = Field(
        ...,
        description="Issuer identifier of the OpenID Provider (e.g., https://idp.example.com/realms/main)",
        min_length=1,
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="Client ID registered at the OpenID Provider",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (optional for public clients)",
    )

    OIDC_CLIENT_AUTH_METHOD: str = Field(
        default="client_secret_basic",
        description="Token endpoint authentication method (client_secret_basic, client_secret_post or none)",
    )

    OIDC_SCOPES: Optional[str] = Field(
        None,
        description="Comma-separated scopes requested in addition to 'openid profile email'",
    )

    # =========================================================================
    # Route Layout
    # =========================================================================

    LOGIN_PATH: str = Field(default="/auth/login", description="Login entry point")
    CALLBACK_PATH: str = Field(default="/auth/callback", description="Authentication response endpoint")
    LOGOUT_PATH: str = Field(default="/auth/logout", description="RP-initiated logout endpoint (POST)")
    LOGOUT_CALLBACK_PATH: str = Field(
        default="/auth/logout/callback",
        description="Post-logout redirect endpoint",
    )
    BACKCHANNEL_LOGOUT_PATH: str = Field(
        default="/auth/backchannel-logout",
        description="Back-channel logout endpoint registered at the OpenID Provider",
    )

    # =========================================================================
    # Logout Behaviour
    # =========================================================================

    POST_LOGOUT_REDIRECT_PATH: Optional[str] = Field(
        None,
        description="Path sent as post_logout_redirect_uri (usually LOGOUT_CALLBACK_PATH); unset to let the OP decide",
    )

    USE_LOGOUT_STATE: bool = Field(
        default=False,
        description="Send and verify a state parameter on the RP-initiated logout round trip",
    )

    LOGOUT_TOKEN_REQUIRE_TYPED: bool = Field(
        default=False,
        description="Require the 'logout+jwt' type header on back-channel logout tokens",
    )

    ENABLE_BACKCHANNEL_LOGOUT: bool = Field(
        default=True,
        description="Track OP sessions so back-channel logout can invalidate local sessions",
    )

    REVOKE_TOKENS_ON_LOGOUT: bool = Field(
        default=False,
        description="Revoke access/refresh tokens at the OP after RP-initiated logout",
    )

    # =========================================================================
    # Session Cookie Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        ...,
        description="Secret key for signing the session cookie (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(default="oidc_session", description="Session cookie name")

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=3600,
        description="Idle lifetime of a session in seconds",
        ge=60,
        le=86400,  # Max 24 hours
    )

    COOKIE_SECURE: bool = Field(
        default=True,
        description="Set the Secure attribute on the session cookie",
    )

    # =========================================================================
    # Principal Mapping
    # =========================================================================

    ROLE_CLAIM_MODE: str = Field(
        default="none",
        description="How roles are read from the userinfo response (none or keycloak)",
    )

    # =========================================================================
    # OP Communication
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for requests to the OpenID Provider",
        gt=0,
        le=120,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider JWKS in seconds",
        ge=60,
        le=86400,
    )

    CLOCK_SKEW_SECONDS: int = Field(
        default=30,
        description="Leeway applied to exp/iat/nbf checks",
        ge=0,
        le=300,
    )

    # =========================================================================
    # Server & CORS Configuration
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")
    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def extra_scopes_list(self) -> List[str]:
        """Scopes requested on top of the mandatory OpenID Connect ones."""
        if not self.OIDC_SCOPES:
            return []
        return [scope.strip() for scope in self.OIDC_SCOPES.split(",") if scope.strip()]

    @property
    def issuer_str(self) -> str:
        """
        Issuer without trailing slash (used to build the discovery URL).
        """
        return self.OIDC_ISSUER.rstrip("/")

    @property
    def ungated_paths(self) -> List[str]:
        """
        Routes that must never go through the authorization gate.

        Returns:
            Login, callback, logout, logout callback and back-channel logout paths.
        """
        return [
            self.LOGIN_PATH,
            self.CALLBACK_PATH,
            self.LOGOUT_PATH,
            self.LOGOUT_CALLBACK_PATH,
            self.BACKCHANNEL_LOGOUT_PATH,
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator(
        "LOGIN_PATH",
        "CALLBACK_PATH",
        "LOGOUT_PATH",
        "LOGOUT_CALLBACK_PATH",
        "BACKCHANNEL_LOGOUT_PATH",
        "POST_LOGOUT_REDIRECT_PATH",
    )
    @classmethod
    def validate_path(cls, v: Optional[str]) -> Optional[str]:
        """
        Validate that configured routes are absolute paths.

        Args:
            v: Raw path value

        Returns:
            Validated path

        Raises:
            ValueError: If the path is not absolute or carries a query string
        """
        if v is None:
            return v

        if not v.startswith("/") or v.startswith("//"):
            raise ValueError(f"Invalid path: '{v}'. Expected an absolute path such as '/auth/callback'")

        if "?" in v or "#" in v:
            raise ValueError(f"Invalid path: '{v}'. Paths must not contain a query or fragment")

        return v

    @field_validator("OIDC_CLIENT_AUTH_METHOD")
    @classmethod
    def validate_client_auth_method(cls, v: str) -> str:
        """
        Validate the token endpoint authentication method.

        Raises:
            ValueError: If the method is not supported
        """
        allowed_methods = ["client_secret_basic", "client_secret_post", "none"]

        if v not in allowed_methods:
            raise ValueError(
                f"Client authentication method must be one of {allowed_methods}, got: {v}"
            )

        return v

    @field_validator("ROLE_CLAIM_MODE")
    @classmethod
    def validate_role_claim_mode(cls, v: str) -> str:
        allowed_modes = ["none", "keycloak"]
        if v not in allowed_modes:
            raise ValueError(f"ROLE_CLAIM_MODE must be one of {allowed_modes}, got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.

    Example:
        >>> from oidc_rp.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.OIDC_ISSUER)
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Optional[Settings] = None) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup to surface combinations that
    load fine but will not work against a real OpenID Provider.

    Args:
        settings: Settings to check (defaults to get_settings())

    Returns:
        Dictionary with validation status, errors and warnings.

    Example:
        >>> status = validate_configuration()
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    settings = settings or get_settings()
    errors = []
    warnings = []

    if settings.OIDC_CLIENT_AUTH_METHOD != "none" and not settings.OIDC_CLIENT_SECRET:
        errors.append(
            f"OIDC_CLIENT_SECRET is required for {settings.OIDC_CLIENT_AUTH_METHOD}"
        )

    if settings.OIDC_CLIENT_AUTH_METHOD == "none" and settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is set but OIDC_CLIENT_AUTH_METHOD is 'none'")

    if not settings.issuer_str.startswith("https://"):
        warnings.append("OIDC_ISSUER is not an https URL (acceptable for local development only)")

    if not settings.COOKIE_SECURE:
        warnings.append("COOKIE_SECURE is disabled; session cookies will be sent over plain HTTP")

    if settings.USE_LOGOUT_STATE and not settings.POST_LOGOUT_REDIRECT_PATH:
        warnings.append("USE_LOGOUT_STATE has no effect without POST_LOGOUT_REDIRECT_PATH")

    if (
        settings.POST_LOGOUT_REDIRECT_PATH
        and settings.POST_LOGOUT_REDIRECT_PATH != settings.LOGOUT_CALLBACK_PATH
        and settings.USE_LOGOUT_STATE
    ):
        warnings.append(
            "POST_LOGOUT_REDIRECT_PATH differs from LOGOUT_CALLBACK_PATH; logout state will never be checked"
        )

    if settings.POST_LOGOUT_REDIRECT_PATH == settings.LOGOUT_CALLBACK_PATH and not settings.USE_LOGOUT_STATE:
        warnings.append(
            "POST_LOGOUT_REDIRECT_PATH targets LOGOUT_CALLBACK_PATH, which rejects returns without logout state"
        )

    if len(set(settings.ungated_paths)) != len(settings.ungated_paths):
        errors.append("Authentication routes must use distinct paths")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "issuer": settings.issuer_str,
        "client_auth_method": settings.OIDC_CLIENT_AUTH_METHOD,
        "session_max_age_seconds": settings.SESSION_MAX_AGE_SECONDS,
    }
