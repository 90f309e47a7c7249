"""
PKCE and state helpers for the SMART authorization flow.

Standards:
- PKCE (RFC 7636), S256 method only
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from emr_connect.core.logging import get_logger

logger = get_logger(__name__)

STATE_BYTES = 32
VERIFIER_BYTES = 64  # token_urlsafe(64) yields 86 characters


@dataclass(frozen=True)
class PKCEPair:
    """Code verifier and its S256 challenge"""

    verifier: str
    challenge: str
    method: str = "S256"


def generate_state() -> str:
    """Opaque CSRF nonce with 256 bits of randomness"""
    return secrets.token_hex(STATE_BYTES)


def compute_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair() -> PKCEPair:
    verifier = secrets.token_urlsafe(VERIFIER_BYTES)
    return PKCEPair(verifier=verifier, challenge=compute_code_challenge(verifier))


def decode_unverified_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Decode the claims of a compact JWT without verifying its signature.

    Returns None for anything that is not a well-formed three-part token
    with a JSON object payload. The claims are untrusted: production
    deployments must verify the signature against the provider's JWKS
    before basing trust decisions on them.
    """
    if not token or not isinstance(token, str) or token.count(".") != 2:
        return None

    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug("unverified_token_decode_failed", error=str(e))
        return None

    if not isinstance(claims, dict):
        return None
    return claims


__all__ = [
    "PKCEPair",
    "generate_state",
    "generate_pkce_pair",
    "compute_code_challenge",
    "decode_unverified_token",
]
