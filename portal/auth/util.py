from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Tuple


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(secrets.token_bytes(nbytes))


def pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = random_token(32)  # 43 chars of base64url
    challenge = b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def sanitize_next_path(next_path: str | None) -> str:
    """
    Post-login redirect target. Only same-origin relative paths like `/orders` are kept.
    """
    p = (next_path or "").strip().replace("\r", "").replace("\n", "")
    if not p.startswith("/") or p.startswith("//") or p.startswith("/\\"):
        return "/"
    return p
