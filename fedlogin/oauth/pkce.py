"""PKCE (RFC 7636) verifier/challenge helpers and random token generation."""
from __future__ import annotations

import base64
import hashlib
import secrets

STATE_BYTES = 32
VERIFIER_BYTES = 32
NONCE_BYTES = 16

CHALLENGE_METHOD = "S256"


def base64url(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_state_token() -> str:
    return secrets.token_hex(STATE_BYTES)


def generate_code_verifier() -> str:
    return base64url(secrets.token_bytes(VERIFIER_BYTES))


def generate_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier))."""
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())
