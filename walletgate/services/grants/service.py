"""Grant engine: authorization codes, token pairs, rotation and revocation.

Codes and refresh tokens are single use. Redemption is one
`DELETE ... RETURNING` statement, so when two requests race for the same
credential the database hands the row to exactly one of them and the other
sees `InvalidGrant`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

from sqlalchemy import delete, select

from walletgate.common.errors import InvalidGrant, InvalidParameter, InvalidState, missing_parameter
from walletgate.common.logging import logger
from walletgate.common.metrics import (
    authorization_codes_issued_total,
    grant_failures_total,
    purged_rows_total,
    tokens_issued_total,
)
from walletgate.common.security import generate_token, token_digest
from walletgate.common.timeutil import as_utc, utcnow
from walletgate.services.accounts.models import User
from walletgate.services.accounts.service import UserView
from walletgate.services.grants.models import AuthorizationCode, Token
from walletgate.services.registry.models import Client
from walletgate.services.registry.service import GRANT_AUTHORIZATION_CODE, ClientRegistry, ClientView

TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    redirect_uri: str
    client: ClientView
    user: UserView


@dataclass(frozen=True)
class RedeemedCode:
    redirect_uri: str
    client: ClientView
    user: UserView


@dataclass(frozen=True)
class TokenPair:
    session_id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    created: datetime
    client: ClientView
    user: UserView

    @property
    def expires_in(self) -> int:
        return int((self.access_token_expires_at - self.created).total_seconds())


@dataclass(frozen=True)
class ResolvedToken:
    """What the authentication gate attaches to a request."""

    session_id: str
    expires_at: datetime
    client: ClientView
    user: UserView


class GrantService:
    """Owns the code and token lifecycle; references users and clients by id."""

    def __init__(
        self,
        session_factory,
        auth_code_ttl_seconds: int = 60,
        access_token_ttl_seconds: int = 3600,
        refresh_token_ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.auth_code_ttl_seconds = auth_code_ttl_seconds
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self.clock = clock

    @staticmethod
    def _failure(operation: str, reason: str, message: str) -> InvalidGrant:
        grant_failures_total.labels(operation=operation, reason=reason).inc()
        return InvalidGrant(message)

    def _load_parties(self, db, client_id: str, user_id: str, operation: str) -> tuple[ClientView, UserView]:
        client_row = db.get(Client, client_id)
        user_row = db.get(User, user_id)
        if client_row is None or user_row is None:
            raise self._failure(operation, "orphaned", "Invalid grant: client or user no longer exists")
        return ClientView.from_row(client_row), UserView.from_row(user_row)

    def issue_authorization_code(self, redirect_uri: str | None, client: ClientView, user: UserView) -> IssuedCode:
        """Persist a fresh code for `user` that only `client` can redeem."""

        if not redirect_uri:
            raise missing_parameter("redirect_uri")
        if not ClientRegistry.validate_grant_kind(client, GRANT_AUTHORIZATION_CODE):
            raise InvalidGrant("Unauthorized client: `grant_type` is invalid")
        if not ClientRegistry.validate_redirect_uri(client, redirect_uri):
            raise InvalidParameter(
                f"Invalid client: `redirect_uri` does not match client value: {redirect_uri}",
                parameter="redirect_uri",
            )
        code = generate_token()
        now = self.clock()
        expires_at = now + timedelta(seconds=self.auth_code_ttl_seconds)
        with self.session_factory() as db:
            db.add(
                AuthorizationCode(
                    code_hash=token_digest(code),
                    expires_at=expires_at,
                    redirect_uri=redirect_uri,
                    client_id=client.client_id,
                    user_id=user.user_id,
                    created_at=now,
                )
            )
            db.commit()
        authorization_codes_issued_total.labels(client_id=client.client_id).inc()
        logger.info("authorization code issued client_id=%s user_id=%s", client.client_id, user.user_id)
        return IssuedCode(code=code, expires_at=expires_at, redirect_uri=redirect_uri, client=client, user=user)

    def redeem_authorization_code(self, code: str | None, client: ClientView | None = None) -> RedeemedCode:
        """Consume a code; a second redemption of the same code always fails."""

        if not code:
            raise missing_parameter("code")
        now = self.clock()
        with self.session_factory() as db:
            row = db.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.code_hash == token_digest(code))
                .returning(
                    AuthorizationCode.client_id,
                    AuthorizationCode.user_id,
                    AuthorizationCode.redirect_uri,
                    AuthorizationCode.expires_at,
                )
                .execution_options(synchronize_session=False)
            ).first()
            db.commit()
            if row is None:
                raise self._failure("redeem_code", "absent", "Invalid grant: authorization code is invalid")
            if as_utc(row.expires_at) <= now:
                raise self._failure("redeem_code", "expired", "Invalid grant: authorization code has expired")
            if client is not None and row.client_id != client.client_id:
                raise self._failure(
                    "redeem_code", "client_mismatch", "Invalid grant: code was issued to another client"
                )
            code_client, user = self._load_parties(db, row.client_id, row.user_id, "redeem_code")
        if not user.is_usable(now):
            raise InvalidState(f"user {user.username} is not active")
        return RedeemedCode(redirect_uri=row.redirect_uri, client=code_client, user=user)

    def issue_token_pair(
        self, client: ClientView, user: UserView, grant_type: str = GRANT_AUTHORIZATION_CODE
    ) -> TokenPair:
        """Create an access/refresh pair sharing one new session id."""

        now = self.clock()
        access_ttl = client.access_token_lifetime or self.access_token_ttl_seconds
        refresh_ttl = client.refresh_token_lifetime or self.refresh_token_ttl_seconds
        pair = TokenPair(
            session_id=str(uuid4()),
            access_token=generate_token(),
            access_token_expires_at=now + timedelta(seconds=access_ttl),
            refresh_token=generate_token(),
            refresh_token_expires_at=now + timedelta(seconds=refresh_ttl),
            created=now,
            client=client,
            user=user,
        )
        with self.session_factory() as db:
            for token, token_type, expires_at in (
                (pair.access_token, TOKEN_ACCESS, pair.access_token_expires_at),
                (pair.refresh_token, TOKEN_REFRESH, pair.refresh_token_expires_at),
            ):
                db.add(
                    Token(
                        token_hash=token_digest(token),
                        token_type=token_type,
                        session_id=pair.session_id,
                        expires_at=expires_at,
                        client_id=client.client_id,
                        user_id=user.user_id,
                        created_at=now,
                    )
                )
            db.commit()
        tokens_issued_total.labels(client_id=client.client_id, grant_type=grant_type).inc()
        logger.info(
            "token pair issued client_id=%s user_id=%s session_id=%s",
            client.client_id,
            user.user_id,
            pair.session_id,
        )
        return pair

    def redeem_refresh_token(self, token: str | None, client: ClientView | None = None) -> TokenPair:
        """Rotate: delete the presented refresh token and issue a new pair."""

        if not token:
            raise missing_parameter("refresh_token")
        now = self.clock()
        with self.session_factory() as db:
            row = db.execute(
                delete(Token)
                .where(Token.token_hash == token_digest(token), Token.token_type == TOKEN_REFRESH)
                .returning(Token.client_id, Token.user_id, Token.expires_at)
                .execution_options(synchronize_session=False)
            ).first()
            db.commit()
            if row is None:
                raise self._failure("redeem_refresh", "absent", "Invalid grant: refresh token is invalid")
            if as_utc(row.expires_at) <= now:
                raise self._failure("redeem_refresh", "expired", "Invalid token: refresh token has expired")
            if client is not None and row.client_id != client.client_id:
                raise self._failure(
                    "redeem_refresh", "client_mismatch", "Invalid grant: refresh token was issued to another client"
                )
            token_client, user = self._load_parties(db, row.client_id, row.user_id, "redeem_refresh")
        if not user.is_usable(now):
            raise InvalidState(f"user {user.username} is not active")
        return self.issue_token_pair(token_client, user, grant_type="refresh_token")

    def resolve_access_token(self, token: str | None, now: datetime | None = None) -> ResolvedToken:
        """Read-only lookup used by the authentication gate."""

        if not token:
            raise InvalidParameter("Invalid request: access token is empty", parameter="access_token")
        if now is None:
            now = self.clock()
        with self.session_factory() as db:
            row = db.execute(
                select(Token).where(Token.token_hash == token_digest(token), Token.token_type == TOKEN_ACCESS)
            ).scalar_one_or_none()
            if row is None:
                raise self._failure("resolve_access", "absent", "Invalid token: access token is invalid")
            expires_at = as_utc(row.expires_at)
            if expires_at <= now:
                raise self._failure("resolve_access", "expired", "Invalid token: access token has expired")
            client, user = self._load_parties(db, row.client_id, row.user_id, "resolve_access")
            return ResolvedToken(session_id=row.session_id, expires_at=expires_at, client=client, user=user)

    def _revoke(self, token: str, token_type: str) -> bool:
        if not token:
            return False
        with self.session_factory() as db:
            result = db.execute(
                delete(Token)
                .where(Token.token_hash == token_digest(token), Token.token_type == token_type)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0

    def revoke_access_token(self, token: str) -> bool:
        return self._revoke(token, TOKEN_ACCESS)

    def revoke_refresh_token(self, token: str) -> bool:
        return self._revoke(token, TOKEN_REFRESH)

    def revoke_user_grants(self, user_id: str) -> int:
        """Delete every code and token belonging to a user."""

        with self.session_factory() as db:
            codes = db.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.user_id == user_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            tokens = db.execute(
                delete(Token).where(Token.user_id == user_id).execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        logger.info("grants revoked user_id=%s codes=%s tokens=%s", user_id, codes, tokens)
        return codes + tokens

    def purge_expired(self) -> dict[str, int]:
        """Remove expired codes and tokens; they are already treated as absent."""

        now = self.clock()
        with self.session_factory() as db:
            codes = db.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.expires_at <= now)
                .execution_options(synchronize_session=False)
            ).rowcount
            tokens = db.execute(
                delete(Token).where(Token.expires_at <= now).execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        purged_rows_total.labels(table="authorization_codes").inc(codes)
        purged_rows_total.labels(table="tokens").inc(tokens)
        return {"authorization_codes": codes, "tokens": tokens}
