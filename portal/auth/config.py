from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DOMAINS = "replit.app,replit.dev,replit.com"
DEFAULT_ISSUER_URL = "https://replit.com/oidc"
# Only used when SESSION_SECRET is not set (local development).
DEV_SESSION_SECRET = "package-management-secret-key"


@dataclass(frozen=True)
class AuthConfig:
    # Hosting environment marker; doubles as the OIDC client id.
    repl_id: Optional[str]
    issuer_url: str
    client_secret: Optional[str]  # Confidential clients only (default: public client + PKCE)
    allowed_domains: List[str]  # One login strategy per hostname

    # Session configuration
    session_secret: str
    session_ttl_seconds: int
    cookie_secure: bool

    # Minimum gap between discovery re-probes after a failed setup
    oidc_retry_seconds: int

    @property
    def federated_enabled(self) -> bool:
        """Federated login exists only inside the hosting environment."""
        return bool(self.repl_id)

    @property
    def client_id(self) -> Optional[str]:
        return self.repl_id

    @property
    def demo_enabled(self) -> bool:
        """Demo (email/password) login is always available."""
        return True


def _parse_csv(value: str) -> List[str]:
    items = [x.strip().lower() for x in (value or "").split(",")]
    out: List[str] = []
    for x in items:
        if x and x not in out:
            out.append(x)
    return out


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Resolved once per process; the federated path is enabled when REPL_ID is set.
    """
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    cookie_secure = cookie_secure_env in ("1", "true", "yes", "on")

    session_secret = (os.getenv("SESSION_SECRET", "") or "").strip()
    if not session_secret:
        logger.warning("SESSION_SECRET is not set; using the development secret")
        session_secret = DEV_SESSION_SECRET

    return AuthConfig(
        repl_id=(os.getenv("REPL_ID", "") or "").strip() or None,
        issuer_url=(os.getenv("ISSUER_URL", "") or "").strip() or DEFAULT_ISSUER_URL,
        client_secret=(os.getenv("OIDC_CLIENT_SECRET", "") or "").strip() or None,
        allowed_domains=_parse_csv(os.getenv("REPLIT_DOMAINS", "") or DEFAULT_DOMAINS),
        session_secret=session_secret,
        session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 7 * 24 * 60 * 60, 60),  # 1 week default
        cookie_secure=cookie_secure,
        oidc_retry_seconds=_env_int("OIDC_RETRY_SECONDS", 60, 0),
    )
