"""
Error taxonomy for the relying-party flows.

Three families of failures are kept apart on purpose:

- ClientProtocolError (400): the browser sent something we will not act on
  (missing or mismatched state, OP error redirect, malformed logout token,
  non-navigation request).
- ProviderValidationError (500): a response from the trusted OP failed
  validation (signature, issuer, audience, expiry, nonce). Either the OP
  misbehaves or our own configuration is wrong.
- ProviderRequestError (500): talking to the OP failed (I/O error or an
  error response from the token, userinfo, PAR, JWKS or revocation endpoint).

None of them is retried.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.responses import Response

from oidc_rp.models import ErrorResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class OIDCError(Exception):
    """Base exception for relying-party errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        self.details = details


class ClientProtocolError(OIDCError):
    """The request is not an acceptable protocol message."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_request"


class LogoutTokenError(ClientProtocolError):
    """A back-channel logout token was missing or failed validation."""


class ProviderValidationError(OIDCError):
    """A token or response issued by the OP failed validation."""

    error = "invalid_provider_response"


class ProviderRequestError(OIDCError):
    """A request to the OP failed or returned an error."""

    error = "provider_request_failed"


class AuthorizationDenied(Exception):
    """
    Raised by route-level authorization checks.

    Carries the response to send instead of the route's own: a redirect to
    the OP, 401 or 403.
    """

    def __init__(self, response: Response):
        super().__init__(f"Authorization denied ({response.status_code})")
        self.response = response


# =============================================================================
# Responses
# =============================================================================

def error_response(exc: OIDCError) -> JSONResponse:
    """
    Render an OIDCError as the standard JSON error envelope.

    Args:
        exc: Error to render

    Returns:
        JSONResponse with the error's status code and Cache-Control: no-store
    """
    body = ErrorResponse(error=exc.error, message=exc.message, details=exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json"),
        headers={"Cache-Control": "no-store"},
    )


def log_oidc_error(exc: OIDCError, request: Optional[Request] = None) -> None:
    """
    Log an OIDCError at a level matching who is at fault.

    Client protocol errors are expected noise and logged as warnings;
    everything else is logged as an error, with the traceback of the
    underlying cause when there is one.
    """
    extra = {"error": exc.error, "status_code": exc.status_code}
    if request is not None:
        extra.update({"path": request.url.path, "method": request.method})

    if exc.status_code < 500:
        logger.warning(f"Rejected request: {exc.message}", extra=extra)
    else:
        logger.error(
            f"Authentication failure: {exc.message}",
            extra=extra,
            exc_info=exc.__cause__ is not None,
        )


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:
    """
    Install the OIDCError, AuthorizationDenied and global fallback handlers.

    Args:
        app: Application to configure
        debug: Expose the exception text of unhandled errors
    """

    @app.exception_handler(OIDCError)
    async def oidc_error_handler(request: Request, exc: OIDCError) -> JSONResponse:
        log_oidc_error(exc, request)
        return error_response(exc)

    @app.exception_handler(AuthorizationDenied)
    async def authorization_denied_handler(request: Request, exc: AuthorizationDenied) -> Response:
        return exc.response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        body = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            details={"detail": str(exc)} if debug else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))
