"""Public HTTP surface: OAuth authorize/token, account and wallet endpoints.

`create_app` wires the credential store, services and middleware at process
start; nothing here is created at import time.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from time import perf_counter
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Form, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from walletgate.common.config import WalletGateSettings, get_settings
from walletgate.common.db import create_schema, make_engine, make_session_factory
from walletgate.common.errors import InvalidParameter, WalletGateError, missing_parameter
from walletgate.common.logging import configure_logging, logger, request_id_ctx
from walletgate.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from walletgate.common.startup import log_startup_config
from walletgate.common.timeutil import utcnow
from walletgate.common.tracing import instrument_app, setup_tracing
from walletgate.services.accounts.service import AccountService, negotiate_language
from walletgate.services.api_gateway.auth import AuthenticationGate, require_auth
from walletgate.services.api_gateway.schemas import (
    BetRequest,
    CreateUserRequest,
    PayoffRequest,
    ReverseRequest,
    SetUserActiveRequest,
    UpdateUserRequest,
)
from walletgate.services.grants.service import GrantService, ResolvedToken
from walletgate.services.ledger.service import LedgerService
from walletgate.services.registry.service import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    ClientRegistry,
)

SESSION_USER_KEY = "username"

router = APIRouter()


def _json(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def enforce_api_key(request: Request, x_api_key: str | None) -> None:
    """Internal user-management routes require the configured API key."""

    if x_api_key != request.app.state.settings.api_key:
        raise InvalidParameter("invalid API key", parameter="x-api-key")


def build_redirect_uri(redirect_uri: str, code: str, state: str | None) -> str:
    """Append `code` (and `state`) to the client's redirect URI, replacing stale ones."""

    parts = urlsplit(redirect_uri)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in ("code", "state")]
    query.append(("code", code))
    if state:
        query.append(("state", state))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _authorize_redirect(state, params: dict, username: str | None) -> RedirectResponse:
    """Issue a code for the session user and redirect back to the client."""

    if params.get("response_type") != "code":
        raise InvalidParameter("Invalid parameter: `response_type`", parameter="response_type")
    redirect_uri = params.get("redirect_uri")
    if not redirect_uri:
        raise missing_parameter("redirect_uri")
    client = state.registry.resolve_client_by_id(params.get("client_id"))
    if not username:
        raise InvalidParameter("Invalid user: session did not return a user", parameter="session")
    user = state.accounts.get_user(username)
    issued = state.grants.issue_authorization_code(redirect_uri, client, user)
    return RedirectResponse(build_redirect_uri(redirect_uri, issued.code, params.get("state")), status_code=302)


def _wallet_details(body: dict, legs_field: str | None = None) -> dict:
    return {k: v for k, v in body.items() if k not in ("txId", "access_token", legs_field)}


@router.get("/healthcheck")
def healthcheck():
    return {"state": "healthy"}


@router.get("/")
def default_client_redirect(request: Request):
    """Send bare visits to the default client's authorize URL."""

    settings: WalletGateSettings = request.app.state.settings
    client = request.app.state.registry.resolve_client_by_id(settings.oauth_default_client_id)
    query = urlencode(
        {"response_type": "code", "client_id": client.client_id, "redirect_uri": client.redirect_uris[0]},
        safe=":/",
    )
    return RedirectResponse(f"{settings.base_path}/oauth2.0/authorize?{query}", status_code=301)


@router.get("/oauth2.0/authorize")
def authorize(request: Request):
    """Redirect with a code when the session holds a user, else describe the login form."""

    params = dict(request.query_params)
    username = request.session.get(SESSION_USER_KEY)
    if username:
        return _authorize_redirect(request.app.state, params, username)
    request.app.state.registry.resolve_client_by_id(params.get("client_id"))
    action_url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
    return {"login_required": True, "action_url": action_url, "fields": ["username", "password", "guest"]}


@router.post("/oauth2.0/authorize")
async def authorize_login(request: Request):
    """Log in (or create a guest), remember the user in the session, then authorize."""

    form = await request.form()
    params = {**dict(request.query_params), **{k: v for k, v in form.items() if isinstance(v, str)}}
    state = request.app.state
    if params.get("guest") == "true":
        language = negotiate_language(request.headers.get("accept-language"), state.settings.language_list())
        user = await run_in_threadpool(state.accounts.create_guest_user, language)
    else:
        user = await run_in_threadpool(state.accounts.login_user, params.get("username"), params.get("password"))
    request.session[SESSION_USER_KEY] = user.username
    return await run_in_threadpool(_authorize_redirect, state, params, user.username)


@router.post("/oauth2.0/token")
def token(
    request: Request,
    grant_type: str | None = Form(default=None),
    client_id: str | None = Form(default=None),
    client_secret: str | None = Form(default=None),
    code: str | None = Form(default=None),
    refresh_token: str | None = Form(default=None),
):
    """Exchange an authorization code or refresh token for a new token pair."""

    state = request.app.state
    if not grant_type:
        raise missing_parameter("grant_type")
    client = state.registry.resolve_client_by_secret(client_id, client_secret)
    supported = grant_type in (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)
    if not supported or not ClientRegistry.validate_grant_kind(client, grant_type):
        raise InvalidParameter("Invalid parameter: `grant_type`", parameter="grant_type")
    if grant_type == GRANT_AUTHORIZATION_CODE:
        redeemed = state.grants.redeem_authorization_code(code, client)
        pair = state.grants.issue_token_pair(redeemed.client, redeemed.user, grant_type=grant_type)
    else:
        pair = state.grants.redeem_refresh_token(refresh_token, client)
    return {
        "access_token": pair.access_token,
        "expires_in": pair.expires_in,
        "refresh_token": pair.refresh_token,
    }


@router.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse("/", status_code=301)


@router.get("/account")
def account(auth: ResolvedToken = Depends(require_auth)):
    user = auth.user
    return {
        "sessionId": auth.session_id,
        "currency": user.currency,
        "balance": user.balance,
        "language": user.language,
        "playerId": user.username,
        "playerName": user.name,
        "avatarUrl": user.avatar_url,
    }


@router.get("/balance")
def balance(auth: ResolvedToken = Depends(require_auth)):
    return {"balance": auth.user.balance}


@router.post("/bet")
def bet(req: BetRequest, request: Request, auth: ResolvedToken = Depends(require_auth)):
    body = req.model_dump(mode="json")
    result = request.app.state.ledger.place_bets(
        auth.user.user_id, req.txId, body["bets"], _wallet_details(body, "bets")
    )
    return {"balance": result.balance, "txId": result.tx_id}


@router.post("/payoff")
def payoff(req: PayoffRequest, request: Request, auth: ResolvedToken = Depends(require_auth)):
    body = req.model_dump(mode="json")
    result = request.app.state.ledger.pay_payoffs(
        auth.user.user_id, req.txId, body["payoffs"], _wallet_details(body, "payoffs")
    )
    return {"balance": result.balance, "txId": result.tx_id}


@router.post("/reverse")
def reverse(req: ReverseRequest, request: Request, auth: ResolvedToken = Depends(require_auth)):
    body = req.model_dump(mode="json")
    result = request.app.state.ledger.reverse_transaction(
        auth.user.user_id, req.txId, req.reversalAmount, _wallet_details(body)
    )
    return {"balance": result.balance, "txId": result.tx_id}


@router.post("/internal/createUser")
def create_user(req: CreateUserRequest, request: Request, x_api_key: str | None = Header(default=None)):
    enforce_api_key(request, x_api_key)
    user = request.app.state.accounts.create_user(
        currency=req.currency,
        balance=req.balance,
        language=req.language,
        username=req.username,
        password=req.password,
        name=req.name,
        name_prefix=req.namePrefix,
        user_type=req.type,
        avatar_url=req.avatarUrl,
    )
    return user.to_public()


@router.post("/internal/updateUser")
def update_user(req: UpdateUserRequest, request: Request, x_api_key: str | None = Header(default=None)):
    enforce_api_key(request, x_api_key)
    user = request.app.state.accounts.update_user(
        req.username,
        balance=req.balance,
        language=req.language,
        password=req.password,
        name=req.name,
        avatar_url=req.avatarUrl,
    )
    return user.to_public()


@router.post("/internal/setUserActive")
def set_user_active(req: SetUserActiveRequest, request: Request, x_api_key: str | None = Header(default=None)):
    enforce_api_key(request, x_api_key)
    user = request.app.state.accounts.set_user_active(req.username, req.active)
    return {"username": user.username, "active": user.active}


@router.get("/internal/reconciliation")
def reconciliation_report(request: Request, limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Global ledger integrity summary over all users."""

    enforce_api_key(request, x_api_key)
    return request.app.state.ledger.reconciliation_report(limit=limit)


@router.get("/internal/reconciliation/{username}")
def reconciliation(username: str, request: Request, x_api_key: str | None = Header(default=None)):
    enforce_api_key(request, x_api_key)
    user = request.app.state.accounts.find_user_by_username(username)
    return request.app.state.ledger.reconcile(user.user_id)


@router.get("/internal/users/{username}/transactions")
def transactions(username: str, request: Request, limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(request, x_api_key)
    user = request.app.state.accounts.find_user_by_username(username)
    return request.app.state.ledger.list_transactions(user.user_id, limit=limit)


async def purge_loop(grants: GrantService, interval_seconds: int) -> None:
    """Periodically delete expired codes and tokens."""

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await run_in_threadpool(grants.purge_expired)
            if any(counts.values()):
                logger.info("expired grants purged %s", counts)
        except Exception as exc:
            logger.exception("grant purge failed: %s", exc)


def bootstrap(state) -> None:
    """Register configured clients and seed test players."""

    for client in state.settings.bootstrap_clients():
        state.registry.ensure_client(
            client.client_id,
            client.secret,
            [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            client.redirect_uris,
        )
    if state.settings.seed_players:
        state.accounts.seed_default_players()
    logger.info("bootstrap complete")


def create_app(
    settings: WalletGateSettings | None = None,
    engine: Engine | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the application with its own engine and services."""

    settings = settings or get_settings()
    configure_logging(settings.service_name, settings.log_level)
    setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
    log_startup_config(
        settings,
        [
            "database_url",
            "release_version",
            "port",
            "trust_proxy",
            "secure_session",
            "session_secret",
            "oauth_client_id",
            "auth_code_ttl_seconds",
            "access_token_ttl_seconds",
            "refresh_token_ttl_seconds",
            "guest_user_ttl_seconds",
            "password_salt_rounds",
        ],
    )
    engine = engine or make_engine(settings.database_url, settings.database_pool_timeout_seconds)
    session_factory = make_session_factory(engine)

    registry = ClientRegistry(session_factory, salt_rounds=settings.password_salt_rounds)
    grants = GrantService(
        session_factory,
        auth_code_ttl_seconds=settings.auth_code_ttl_seconds,
        access_token_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_token_ttl_seconds=settings.refresh_token_ttl_seconds,
        clock=clock,
    )
    ledger = LedgerService(session_factory)
    accounts = AccountService(
        session_factory,
        ledger,
        grants,
        salt_rounds=settings.password_salt_rounds,
        guest_ttl_seconds=settings.guest_user_ttl_seconds,
        initial_guest_balance=settings.initial_balance,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create schema, bootstrap, and run the purge loop with the app lifecycle."""

        await run_in_threadpool(create_schema, engine)
        await run_in_threadpool(bootstrap, app.state)
        purge_task = app.state.purge_task = asyncio.create_task(
            purge_loop(grants, settings.purge_interval_seconds)
        )
        yield
        purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await purge_task
        engine.dispose()

    app = FastAPI(title="WalletGate", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.grants = grants
    app.state.ledger = ledger
    app.state.accounts = accounts
    app.state.gate = AuthenticationGate(grants)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        https_only=settings.secure_session,
        same_site="lax",
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Bind a request id and record request count and latency."""

        request_id = request.headers.get("x-request-id") or str(uuid4())
        request_id_ctx.set(request_id)
        start = perf_counter()
        route = request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers["x-request-id"] = request_id
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name, route=route, method=request.method
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=request.method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(WalletGateError)
    async def wallet_gate_error_handler(request: Request, exc: WalletGateError):
        logger.info(
            "request rejected method=%s path=%s error=%s message=%s",
            request.method,
            request.url.path,
            exc.kind.value,
            exc.message,
        )
        return _json(exc.status_code, exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()})
        logger.info("request validation failed path=%s fields=%s", request.url.path, fields)
        error = InvalidParameter("request validation failed", parameters=fields)
        return _json(error.status_code, error.to_body())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled error method=%s path=%s request_id=%s",
            request.method,
            request.url.path,
            request_id_ctx.get(),
            exc_info=exc,
        )
        return _json(500, {"errorCode": 500, "error": "server_error"})

    app.include_router(router, prefix=settings.base_path)
    app.add_api_route("/", default_client_redirect, methods=["GET"], include_in_schema=False)
    app.add_api_route("/metrics", metrics_response, methods=["GET"])
    instrument_app(app)
    return app


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.port,
        proxy_headers=settings.trust_proxy > 0,
        forwarded_allow_ips="*" if settings.trust_proxy > 0 else None,
    )


if __name__ == "__main__":
    run()
