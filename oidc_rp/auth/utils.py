"""
Request helpers shared by the authentication endpoints.

This module handles:
- PKCE verifier/challenge and random state/nonce generation
- Classifying requests (navigation, safe method, same origin) from
  fetch-metadata headers, with an Origin/Referer fallback for clients
  that do not send them
- Building redirect responses and validating return-to targets
"""

import base64
import hashlib
import secrets
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urljoin, urlsplit

from fastapi import Request, status
from fastapi.responses import RedirectResponse


RETURN_TO_PARAMETER_NAME = "return-to"

SAFE_METHODS = frozenset({"GET", "HEAD"})


# =============================================================================
# PKCE and Random Values
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    return secrets.token_urlsafe(32)


# =============================================================================
# Request Classification
# =============================================================================

def is_navigation(request: Request) -> bool:
    """
    Whether the request is a top-level navigation.

    Browsers without fetch metadata are given the benefit of the doubt.
    """
    mode = request.headers.get("sec-fetch-mode")
    return mode is None or mode == "navigate"


def is_safe_method(request: Request) -> bool:
    return request.method.upper() in SAFE_METHODS


def request_origin(request: Request) -> str:
    """Scheme and authority of the request, e.g. https://app.example.com"""
    return f"{request.url.scheme}://{request.url.netloc}"


def is_same_origin(request: Request) -> bool:
    """
    Whether the request was initiated from our own origin.

    Trusts Sec-Fetch-Site when it says same-origin; otherwise compares the
    Origin header, or the origin of the Referer, with the request URL.

    Returns:
        True for same-origin requests, False when cross-origin or unknown
    """
    if request.headers.get("sec-fetch-site") == "same-origin":
        return True

    origin = request.headers.get("origin")
    if origin is None or origin == "null":
        referer = request.headers.get("referer")
        if not referer:
            return False
        parts = urlsplit(referer)
        if not parts.scheme or not parts.netloc:
            return False
        origin = f"{parts.scheme}://{parts.netloc}"

    return origin.rstrip("/").lower() == request_origin(request).lower()


# =============================================================================
# URIs and Redirects
# =============================================================================

def get_request_uri(request: Request) -> str:
    """
    Path and query of the request, suitable as a same-origin return target.
    """
    path = request.url.path or "/"
    if request.url.query:
        return f"{path}?{request.url.query}"
    return path


def get_return_to_parameter(request: Request, params: Optional[Mapping[str, str]] = None) -> str:
    """
    Read the return-to parameter, only accepting same-origin targets.

    Args:
        request: Current request
        params: Already-parsed parameters (defaults to the query string)

    Returns:
        A path (with query) on this origin, or "/" if the parameter is
        missing or points elsewhere
    """
    params = params if params is not None else request.query_params
    value = params.get(RETURN_TO_PARAMETER_NAME)
    if not value:
        return "/"

    base = request_origin(request) + "/"
    resolved = urlsplit(urljoin(base, value))
    if f"{resolved.scheme}://{resolved.netloc}".lower() != base[:-1].lower():
        return "/"

    path = resolved.path or "/"
    if resolved.query:
        path = f"{path}?{resolved.query}"
    return path


async def read_parameters(request: Request) -> dict:
    """
    Merge query parameters with an application/x-www-form-urlencoded body.

    Used by endpoints the OP may reach with either GET or POST (form_post
    response mode, back-channel logout).
    """
    params = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.split(";")[0].strip().lower() == "application/x-www-form-urlencoded":
            body = (await request.body()).decode("utf-8", errors="replace")
            params.update(parse_qsl(body, keep_blank_values=True))
    return params


def send_redirect(location: str) -> RedirectResponse:
    """
    Redirect with 303 See Other so the follow-up is always a GET.
    """
    return RedirectResponse(url=location, status_code=status.HTTP_303_SEE_OTHER)
