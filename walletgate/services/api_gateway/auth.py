"""Authentication gate: bearer credential to (session, user, client)."""

import re

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from walletgate.common.errors import InvalidGrant, InvalidState
from walletgate.common.logging import session_id_ctx, user_id_ctx
from walletgate.services.grants.service import GrantService, ResolvedToken

BEARER_RE = re.compile(r"Bearer\s(\S+)")


async def extract_access_token(request: Request) -> str | None:
    """Header first, then query string, then form or JSON body."""

    match = BEARER_RE.search(request.headers.get("authorization", ""))
    if match:
        return match.group(1)
    token = request.query_params.get("access_token")
    if token:
        return token
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return None
        return body.get("access_token") if isinstance(body, dict) else None
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        value = form.get("access_token")
        return value if isinstance(value, str) else None
    return None


class AuthenticationGate:
    def __init__(self, grants: GrantService) -> None:
        self.grants = grants

    def authenticate(self, token: str | None) -> ResolvedToken:
        if not token:
            raise InvalidGrant("Invalid request: no bearer credential supplied")
        now = self.grants.clock()
        resolved = self.grants.resolve_access_token(token, now=now)
        if not resolved.user.is_usable(now):
            raise InvalidState(f"user {resolved.user.username} is not active")
        return resolved


async def require_auth(request: Request) -> ResolvedToken:
    """FastAPI dependency guarding account and wallet routes."""

    gate: AuthenticationGate = request.app.state.gate
    token = await extract_access_token(request)
    resolved = await run_in_threadpool(gate.authenticate, token)
    request.state.auth = resolved
    session_id_ctx.set(resolved.session_id)
    user_id_ctx.set(resolved.user.user_id)
    return resolved
