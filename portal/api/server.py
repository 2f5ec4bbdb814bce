"""
Portal API server.

Session authentication endpoints: demo (email/password) login everywhere, plus federated
OIDC login when running inside the hosting environment. Protected application routes
declare `Depends(require_user)`.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import psycopg
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from portal.auth.config import AuthConfig, load_auth_config
from portal.auth.deps import current_user, request_session
from portal.auth.errors import (
    MSG_CREDENTIALS_REQUIRED,
    MSG_INVALID_CREDENTIALS,
    MSG_LOGIN_FAILED,
    MSG_LOGIN_SUCCEEDED,
    MSG_LOGOUT_FAILED,
    MSG_LOGOUT_SUCCEEDED,
    AuthError,
    BadRequest,
    InternalError,
    Unauthorized,
)
from portal.auth.models import FederatedPrincipal, UserUpsert, user_to_dict
from portal.auth.oidc import (
    FederatedAuth,
    OIDCError,
    build_authorize_url,
    build_end_session_url,
    exchange_code_for_tokens,
    get_federated_auth,
    principal_from_tokens,
)
from portal.auth.session import (
    SESSION_OIDC_STATE_KEY,
    SESSION_PRINCIPAL_KEY,
    SESSION_USER_KEY,
    Session,
    SessionStoreError,
    clear_session_cookie_kwargs,
    destroy_session,
    get_session_store,
    load_session,
    save_session,
    session_cookie_kwargs,
    session_cookie_name,
    set_principal,
)
from portal.auth.util import pkce_pair, random_token, sanitize_next_path
from portal.db.config import build_postgres_dsn, load_database_config

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/login"

router = APIRouter()


def _get_db_connection() -> Optional[psycopg.Connection]:
    """Get a Postgres connection, or return None if not configured."""
    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        return None
    return psycopg.connect(dsn)


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _federated_or_404() -> FederatedAuth:
    fed = get_federated_auth()
    if not fed.available():
        raise HTTPException(status_code=404, detail="Not Found")
    return fed


@router.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@router.get("/api/auth/mode")
def auth_mode() -> Dict[str, Any]:
    """
    Which login options the UI should render. Public; returns no secrets.
    """
    return {
        "ok": True,
        "demoEnabled": load_auth_config().demo_enabled,
        "federatedEnabled": get_federated_auth().available(),
    }


async def _login_credentials(request: Request) -> Dict[str, Any]:
    """JSON object body of the demo login; anything else counts as missing credentials."""
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


@router.post(LOGIN_PATH)
def auth_login_demo(request: Request, credentials: Dict[str, Any] = Depends(_login_credentials)) -> JSONResponse:
    """Demo email/password login. The user record goes into the session as-is."""
    from portal.auth.local import validate_credentials

    email = str(credentials.get("email") or "").strip()
    password = str(credentials.get("password") or "")
    if not email or not password:
        raise BadRequest(MSG_CREDENTIALS_REQUIRED)

    try:
        conn = _get_db_connection()
        if conn is None:
            raise RuntimeError("Database not configured")
        try:
            user = validate_credentials(conn, email, password)
        finally:
            conn.close()
    except Exception:
        logger.exception("Login error")
        raise InternalError(MSG_LOGIN_FAILED)

    if user is None:
        raise Unauthorized(MSG_INVALID_CREDENTIALS)

    profile = jsonable_encoder(user.to_dict())
    request_session(request)[SESSION_USER_KEY] = profile
    logger.info("Demo login for user id=%s", user.id)
    return _no_store(JSONResponse(content={"user": profile, "message": MSG_LOGIN_SUCCEEDED}))


@router.get(LOGIN_PATH)
def auth_login_federated(request: Request, next_path: str = Query("/", alias="next")) -> RedirectResponse:
    """Start the OIDC authorization-code flow for the strategy matching the request host."""
    fed = _federated_or_404()
    strategy = fed.strategy_for_host(request.url.hostname)
    if strategy is None:
        raise HTTPException(status_code=404, detail="Unknown login domain")

    state = random_token(32)
    nonce = random_token(32)
    verifier, challenge = pkce_pair()
    try:
        url = build_authorize_url(fed.cfg, strategy, state=state, nonce=nonce, code_challenge=challenge)
    except OIDCError as e:
        logger.warning("Cannot start OIDC login for %s: %s", strategy.name, str(e))
        raise HTTPException(status_code=503, detail="Identity provider unavailable")

    request_session(request)[SESSION_OIDC_STATE_KEY] = {
        "strategy": strategy.name,
        "state": state,
        "nonce": nonce,
        "code_verifier": verifier,
        "next": sanitize_next_path(next_path),
    }
    return _no_store(RedirectResponse(url=url, status_code=302))


def _complete_federated_login(
    cfg: AuthConfig,
    fed: FederatedAuth,
    request: Request,
    pending: Dict[str, Any],
    *,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
) -> FederatedPrincipal:
    from portal.auth.local import upsert_user

    if error:
        raise OIDCError(f"Provider returned error: {error}")
    if not code or not state or not pending.get("state") or pending.get("state") != state:
        raise OIDCError("Invalid OAuth state")
    strategy = fed.strategy_for_host(request.url.hostname)
    if strategy is None or strategy.name != pending.get("strategy"):
        raise OIDCError("Callback host does not match login strategy")

    tokens = exchange_code_for_tokens(cfg, strategy, code=code, code_verifier=str(pending.get("code_verifier") or ""))
    principal = principal_from_tokens(cfg, tokens, expected_nonce=str(pending.get("nonce") or ""))

    conn = _get_db_connection()
    if conn is None:
        raise RuntimeError("Database not configured")
    try:
        upsert_user(conn, UserUpsert.from_claims(principal.claims))
    finally:
        conn.close()
    return principal


@router.get("/api/callback")
def auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
) -> RedirectResponse:
    """Finish the OIDC flow: tokens -> principal -> user upsert -> session."""
    fed = _federated_or_404()
    session = request_session(request)
    pending = session.pop(SESSION_OIDC_STATE_KEY) or {}
    if not isinstance(pending, dict):
        pending = {}

    try:
        principal = _complete_federated_login(fed.cfg, fed, request, pending, code=code, state=state, error=error)
    except OIDCError as e:
        logger.warning("OIDC callback failed: %s", str(e))
        return _no_store(RedirectResponse(url=LOGIN_PATH, status_code=302))
    except Exception:
        logger.exception("OIDC callback failed")
        return _no_store(RedirectResponse(url=LOGIN_PATH, status_code=302))

    session.regenerate()
    set_principal(session, principal)
    logger.info("Federated login for sub=%s", principal.sub)
    return _no_store(RedirectResponse(url=sanitize_next_path(pending.get("next")), status_code=302))


@router.post("/api/logout")
def auth_logout_demo(request: Request) -> JSONResponse:
    try:
        destroy_session(get_session_store(), request_session(request))
    except SessionStoreError:
        logger.exception("Logout error")
        raise InternalError(MSG_LOGOUT_FAILED)
    return _no_store(JSONResponse(content={"message": MSG_LOGOUT_SUCCEEDED}))


@router.get("/api/logout")
def auth_logout_federated(request: Request) -> RedirectResponse:
    """Local logout, then the provider's end-session endpoint (or `/` if the provider is unreachable)."""
    fed = get_federated_auth()
    if not fed.enabled:
        raise HTTPException(status_code=404, detail="Not Found")

    session = request_session(request)
    post_logout_redirect_uri = f"{request.url.scheme}://{request.url.hostname}"
    try:
        url = build_end_session_url(fed.cfg, post_logout_redirect_uri=post_logout_redirect_uri)
    except OIDCError as e:
        logger.warning("End-session URL unavailable, falling back to local logout: %s", str(e))
        try:
            destroy_session(get_session_store(), session)
        except SessionStoreError:
            logger.exception("Logout error")
            raise InternalError(MSG_LOGOUT_FAILED)
        return _no_store(RedirectResponse(url="/", status_code=302))

    session.pop(SESSION_PRINCIPAL_KEY)
    return _no_store(RedirectResponse(url=url, status_code=302))


@router.get("/api/auth/user")
def auth_user(request: Request) -> Dict[str, Any]:
    return user_to_dict(current_user(request_session(request)))


async def _auth_error_handler(_request: Request, exc: AuthError) -> JSONResponse:
    # No `WWW-Authenticate`: browsers would show a basic-auth modal over the login UI.
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


def _maybe_migrate_db() -> None:
    """
    Optional dev behavior: apply DB migrations when DB_AUTO_MIGRATE=1.

    Never prevents the server from starting; failures are logged.
    """
    from portal.db.migrate import maybe_auto_migrate

    did_attempt, msg = maybe_auto_migrate()
    if did_attempt:
        logger.info("DB migrations: %s", msg)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    await run_in_threadpool(_maybe_migrate_db)
    # Discovery failures are logged inside setup(); the demo path keeps working.
    await run_in_threadpool(get_federated_auth().setup)
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="Portal API", lifespan=_lifespan)
    app.include_router(router)
    app.add_exception_handler(AuthError, _auth_error_handler)

    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        """Load the server-side session before the route; persist it after."""
        cfg = load_auth_config()
        store = get_session_store()
        session: Session = await run_in_threadpool(
            load_session, cfg, store, request.cookies.get(session_cookie_name(cfg))
        )
        request.state.session = session

        response = await call_next(request)

        if session.destroyed:
            response.set_cookie(**clear_session_cookie_kwargs(cfg))
            return response
        try:
            cookie_value = await run_in_threadpool(save_session, cfg, store, session)
        except SessionStoreError:
            logger.exception("Session save failed for %s %s", request.method, request.url.path)
            message = MSG_LOGIN_FAILED if request.method == "POST" and request.url.path == LOGIN_PATH else None
            return JSONResponse(status_code=500, content={"message": message or "Internal Server Error"})
        if cookie_value:
            response.set_cookie(**session_cookie_kwargs(cfg, cookie_value))
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    return app


app = create_app()


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting portal server on %s:%d (log_level=%s)", host, port, log_level)
    # Behind the hosting proxy: trust X-Forwarded-* for scheme and host.
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
