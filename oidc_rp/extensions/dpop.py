"""
DPoP (RFC 9449) support.

Key responsibilities:
- Mint DPoP proofs (typ dpop+jwt, public key in the jwk header) with PyJWT
- Compute the JWK thumbprint sent as dpop_jkt in authorization requests
- Remember server-provided DPoP nonces, per endpoint or globally
- Recognize use_dpop_nonce challenges so the client can retry once
"""

import base64
import hashlib
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import get_default_algorithms

logger = logging.getLogger(__name__)

DPOP_NONCE_HEADER = "DPoP-Nonce"
USE_DPOP_NONCE = "use_dpop_nonce"

_THUMBPRINT_MEMBERS = {
    "EC": ("crv", "kty", "x", "y"),
    "RSA": ("e", "kty", "n"),
    "OKP": ("crv", "kty", "x"),
}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def jwk_thumbprint(jwk: Dict[str, Any]) -> str:
    """
    RFC 7638 SHA-256 thumbprint of a public JWK.

    Raises:
        ValueError: For key types without a defined thumbprint
    """
    try:
        members = _THUMBPRINT_MEMBERS[jwk["kty"]]
    except KeyError:
        raise ValueError(f"Unsupported key type for thumbprint: {jwk.get('kty')}")
    canonical = json.dumps({name: jwk[name] for name in members}, separators=(",", ":"), sort_keys=True)
    return _b64url(hashlib.sha256(canonical.encode("utf-8")).digest())


def normalize_htu(uri: str) -> str:
    """The htu claim: target URI without query and fragment."""
    parts = urlsplit(uri)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


# =============================================================================
# Nonce Stores
# =============================================================================

class DPoPNonceStore(ABC):
    """Remembers the last DPoP nonce handed out by the OP."""

    @abstractmethod
    def get(self, uri: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, uri: str, nonce: str) -> None:
        ...


class PerUriDPoPNonceStore(DPoPNonceStore):
    """One nonce per endpoint; the default, as servers may scope nonces per endpoint."""

    def __init__(self):
        self._nonces: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, uri: str) -> Optional[str]:
        with self._lock:
            return self._nonces.get(normalize_htu(uri))

    def set(self, uri: str, nonce: str) -> None:
        with self._lock:
            self._nonces[normalize_htu(uri)] = nonce


class SingleDPoPNonceStore(DPoPNonceStore):
    """A single nonce shared by all endpoints of the OP."""

    def __init__(self):
        self._nonce: Optional[str] = None

    def get(self, uri: str) -> Optional[str]:
        return self._nonce

    def set(self, uri: str, nonce: str) -> None:
        self._nonce = nonce


# =============================================================================
# Proofs
# =============================================================================

class DPoPProofFactory:
    """
    Creates DPoP proof JWTs for one key pair.

    Args:
        private_key: cryptography private key object (EC or RSA)
        algorithm: JWS algorithm matching the key, e.g. ES256
    """

    def __init__(self, private_key: Any, algorithm: str = "ES256"):
        algorithms = get_default_algorithms()
        if algorithm not in algorithms or algorithm.startswith("HS") or algorithm == "none":
            raise ValueError(f"Unsupported DPoP signing algorithm: {algorithm}")

        self.private_key = private_key
        self.algorithm = algorithm
        public_jwk = algorithms[algorithm].to_jwk(private_key.public_key(), as_dict=True)
        members = _THUMBPRINT_MEMBERS.get(public_jwk["kty"], tuple(public_jwk))
        self.public_jwk = {name: public_jwk[name] for name in members}

    @classmethod
    def generate(cls) -> "DPoPProofFactory":
        """Factory with a fresh P-256 key."""
        return cls(ec.generate_private_key(ec.SECP256R1()), "ES256")

    @property
    def thumbprint(self) -> str:
        return jwk_thumbprint(self.public_jwk)

    def create_proof(
        self,
        method: str,
        uri: str,
        *,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        """
        Create a proof for one HTTP request.

        Args:
            method: HTTP method of the request
            uri: Target URI (query and fragment are dropped)
            nonce: Server-provided nonce, if any
            access_token: Access token the request presents, bound through ath

        Returns:
            Signed DPoP proof
        """
        claims: Dict[str, Any] = {
            "jti": str(uuid.uuid4()),
            "htm": method.upper(),
            "htu": normalize_htu(uri),
            "iat": int(time.time()),
        }
        if nonce:
            claims["nonce"] = nonce
        if access_token:
            claims["ath"] = _b64url(hashlib.sha256(access_token.encode("ascii")).digest())

        headers = {"typ": "dpop+jwt", "jwk": self.public_jwk}
        return jwt.encode(claims, self.private_key, algorithm=self.algorithm, headers=headers)


class DPoPSupport:
    """
    DPoP proof factory plus nonce bookkeeping, as used by the OIDC client
    and the authentication redirector.
    """

    def __init__(self, proof_factory: DPoPProofFactory, nonce_store: Optional[DPoPNonceStore] = None):
        self.proof_factory = proof_factory
        self.nonce_store = nonce_store or PerUriDPoPNonceStore()

    @classmethod
    def create(cls, private_key: Any = None, algorithm: str = "ES256", nonce_store: Optional[DPoPNonceStore] = None) -> "DPoPSupport":
        factory = (
            DPoPProofFactory(private_key, algorithm)
            if private_key is not None
            else DPoPProofFactory.generate()
        )
        return cls(factory, nonce_store)

    @property
    def jkt(self) -> str:
        """Thumbprint sent as dpop_jkt to bind the authorization code to our key."""
        return self.proof_factory.thumbprint

    def create_proof(self, method: str, uri: str, access_token: Optional[str] = None) -> str:
        return self.proof_factory.create_proof(
            method,
            uri,
            nonce=self.nonce_store.get(uri),
            access_token=access_token,
        )

    def update_nonce(self, uri: str, response: httpx.Response) -> bool:
        """
        Store the DPoP-Nonce header of a response.

        Returns:
            True if the response carried a new nonce
        """
        nonce = response.headers.get(DPOP_NONCE_HEADER)
        if not nonce or nonce == self.nonce_store.get(uri):
            return False
        self.nonce_store.set(uri, nonce)
        logger.debug("Stored new DPoP nonce", extra={"uri": normalize_htu(uri)})
        return True


def is_use_dpop_nonce_error(response: httpx.Response) -> bool:
    """
    Whether the response asks the client to retry with a (new) DPoP nonce.

    Token-style endpoints answer 400 with a JSON error; resource servers such
    as the userinfo endpoint answer 401 with a WWW-Authenticate challenge.
    """
    if response.status_code == 400:
        try:
            body = response.json()
        except ValueError:
            return False
        return isinstance(body, dict) and body.get("error") == USE_DPOP_NONCE
    if response.status_code == 401:
        challenge = response.headers.get("www-authenticate", "")
        return challenge.lower().startswith("dpop") and f'error="{USE_DPOP_NONCE}"' in challenge
    return False
