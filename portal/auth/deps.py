from __future__ import annotations

import logging
import time

from fastapi import Request

from portal.auth.config import load_auth_config
from portal.auth.errors import Unauthorized
from portal.auth.models import FederatedPrincipal, SessionUser
from portal.auth.oidc import OIDCError, get_federated_auth, principal_from_tokens, refresh_token_grant
from portal.auth.session import Session, get_demo_user, get_principal, set_principal

logger = logging.getLogger(__name__)


def request_session(request: Request) -> Session:
    """Session attached by the session middleware (empty if the middleware did not run)."""
    session = getattr(request.state, "session", None)
    if session is None:
        session = Session()
        request.state.session = session
    return session


def _refresh_principal(principal: FederatedPrincipal) -> FederatedPrincipal:
    cfg = load_auth_config()
    tokens = refresh_token_grant(cfg, principal.refresh_token or "")
    return principal_from_tokens(cfg, tokens, previous=principal)


def authenticate_session(session: Session) -> SessionUser:
    """
    Resolve the session to an authenticated user, refreshing federated tokens when stale.

    Demo sessions win over federated ones and never expire here (only the store TTL
    and logout end them). Raises Unauthorized otherwise; there is no retry.
    """
    demo = get_demo_user(session)
    if demo is not None:
        return demo

    if not get_federated_auth().available():
        raise Unauthorized()

    principal = get_principal(session)
    if principal is None or principal.expires_at is None:
        raise Unauthorized()

    if principal.is_fresh(time.time()):
        return principal

    if not principal.refresh_token:
        raise Unauthorized()

    try:
        refreshed = _refresh_principal(principal)
    except OIDCError as e:
        logger.info("Token refresh failed for sub=%s: %s", principal.sub, str(e))
        raise Unauthorized() from e

    # Last writer wins if concurrent requests refresh the same session.
    set_principal(session, refreshed)
    return refreshed


def authenticate_request(request: Request) -> SessionUser:
    user = authenticate_session(request_session(request))
    request.state.user = user
    return user


def require_user(request: Request) -> SessionUser:
    """
    FastAPI dependency for protected routes: `user = Depends(require_user)`.

    Declared sync so the (blocking) token refresh runs on the threadpool.
    """
    return authenticate_request(request)


def current_user(session: Session) -> SessionUser:
    """Who `/api/auth/user` reports: demo user first, then any stored federated principal."""
    demo = get_demo_user(session)
    if demo is not None:
        return demo
    principal = get_principal(session)
    if principal is not None:
        return principal
    raise Unauthorized()
