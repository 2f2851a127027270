"""
Facilitator configuration and JWT bearer authentication.

Provides:
1. Facilitator key loading from arguments or environment variables
2. An x402 AuthProvider issuing per-endpoint tokens for verify/settle/supported
3. A builder for the x402 FacilitatorConfig the HTTP client consumes

Keys are either a PEM EC private key (ES256) or a base64 Ed25519 key (EdDSA).
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from x402.http import AuthHeaders, AuthProvider, FacilitatorConfig

from .errors import ConfigError

FACILITATOR_KEY_ID_ENV = "PAYSENTRY_FACILITATOR_KEY_ID"
FACILITATOR_KEY_SECRET_ENV = "PAYSENTRY_FACILITATOR_KEY_SECRET"
DEFAULT_AUDIENCE = ["facilitator"]


@dataclass(frozen=True)
class FacilitatorCredentials:
    key_id: str
    key_secret: str


def load_facilitator_credentials(
    *,
    key_id: Optional[str] = None,
    key_secret: Optional[str] = None,
) -> FacilitatorCredentials:
    """Explicit arguments first, then environment variables."""
    resolved_id = key_id or os.getenv(FACILITATOR_KEY_ID_ENV)
    resolved_secret = key_secret or os.getenv(FACILITATOR_KEY_SECRET_ENV)
    if not resolved_id or not resolved_secret:
        raise ConfigError(
            f"Facilitator credentials not found. Set {FACILITATOR_KEY_ID_ENV} and {FACILITATOR_KEY_SECRET_ENV}."
        )
    return FacilitatorCredentials(key_id=resolved_id, key_secret=resolved_secret)


class FacilitatorAuthProvider(AuthProvider):
    """AuthProvider signing a short-lived token for each facilitator endpoint."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        facilitator_url: str,
        audience: Optional[list[str]] = None,
        expires_in_seconds: int = 120,
    ):
        if not key_id:
            raise ConfigError("Facilitator key ID is required")
        if not key_secret:
            raise ConfigError("Facilitator key secret is required")

        parsed = urlparse(facilitator_url)
        if not parsed.scheme or not parsed.netloc:
            raise ConfigError(f"Invalid facilitator URL: {facilitator_url}")

        self._key_id = key_id
        self._private_key, self._algorithm = parse_private_key(key_secret)
        self._host = parsed.netloc
        self._base_path = parsed.path.rstrip("/")
        self._audience = audience or DEFAULT_AUDIENCE
        self._expires_in_seconds = expires_in_seconds

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def get_auth_headers(self) -> AuthHeaders:
        return AuthHeaders(
            verify={"Authorization": self._authorization_header("POST", f"{self._base_path}/verify")},
            settle={"Authorization": self._authorization_header("POST", f"{self._base_path}/settle")},
            supported={"Authorization": self._authorization_header("GET", f"{self._base_path}/supported")},
        )

    def _authorization_header(self, method: str, path: str) -> str:
        now = int(time.time())
        claims = {
            "sub": self._key_id,
            "iss": "paysentry",
            "aud": self._audience,
            "nbf": now,
            "exp": now + self._expires_in_seconds,
            "uris": [f"{method} {self._host}{path}"],
        }
        token = jwt.encode(
            claims,
            self._private_key,
            algorithm=self._algorithm,
            headers={"kid": self._key_id, "typ": "JWT", "nonce": secrets.token_hex(8)},
        )
        return f"Bearer {token}"


def create_facilitator_config(
    facilitator_url: str,
    *,
    key_id: Optional[str] = None,
    key_secret: Optional[str] = None,
    authenticated: bool = True,
) -> FacilitatorConfig:
    """FacilitatorConfig for `facilitator_url`, signed with the loaded credentials.

    authenticated=False builds an anonymous config for open facilitators.
    """
    if not authenticated:
        return FacilitatorConfig(url=facilitator_url)
    credentials = load_facilitator_credentials(key_id=key_id, key_secret=key_secret)
    return FacilitatorConfig(
        url=facilitator_url,
        auth_provider=FacilitatorAuthProvider(
            key_id=credentials.key_id,
            key_secret=credentials.key_secret,
            facilitator_url=facilitator_url,
        ),
    )


def parse_private_key(
    key_data: str,
) -> tuple[ec.EllipticCurvePrivateKey | ed25519.Ed25519PrivateKey, str]:
    # Env vars often carry literal '\n' sequences.
    if "\\n" in key_data:
        key_data = key_data.replace("\\n", "\n")

    if "-----BEGIN" in key_data:
        try:
            key = serialization.load_pem_private_key(key_data.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Unreadable PEM facilitator key: {e}") from e
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key, "ES256"
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return key, "EdDSA"
        raise ConfigError("PEM facilitator key must be EC or Ed25519")

    try:
        decoded = base64.b64decode(key_data, validate=True)
    except binascii.Error as e:
        raise ConfigError("Facilitator key secret must be a PEM EC key or base64 Ed25519 key") from e
    if len(decoded) in (32, 64):
        return ed25519.Ed25519PrivateKey.from_private_bytes(decoded[:32]), "EdDSA"
    raise ConfigError("Facilitator key secret must be a PEM EC key or base64 Ed25519 key")
