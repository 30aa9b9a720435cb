"""OAuth client registry: identity, secret verification and redirect policy."""

from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from walletgate.common.errors import DuplicateClient, InvalidClient, UnknownClient, missing_parameter
from walletgate.common.logging import logger
from walletgate.common.security import hash_secret, verify_secret
from walletgate.services.registry.models import Client

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class ClientView:
    """Client as seen by the rest of the system; never carries the secret."""

    client_id: str
    grants: tuple[str, ...]
    redirect_uris: tuple[str, ...]
    access_token_lifetime: int | None = None
    refresh_token_lifetime: int | None = None

    @classmethod
    def from_row(cls, row: Client) -> "ClientView":
        return cls(
            client_id=row.client_id,
            grants=tuple(row.grants or ()),
            redirect_uris=tuple(row.redirect_uris or ()),
            access_token_lifetime=row.access_token_lifetime,
            refresh_token_lifetime=row.refresh_token_lifetime,
        )


class ClientRegistry:
    """Owns client records."""

    def __init__(self, session_factory, salt_rounds: int = 10) -> None:
        self.session_factory = session_factory
        self.salt_rounds = salt_rounds

    def register_client(
        self,
        client_id: str,
        secret: str,
        grants: list[str],
        redirect_uris: list[str],
        access_token_lifetime: int | None = None,
        refresh_token_lifetime: int | None = None,
    ) -> ClientView:
        """Store a new client with its secret hashed."""

        if not client_id:
            raise missing_parameter("client_id")
        if not secret:
            raise missing_parameter("client_secret")
        secret_hash = hash_secret(secret, self.salt_rounds)
        with self.session_factory() as db:
            if db.get(Client, client_id) is not None:
                raise DuplicateClient(f"client {client_id} already registered", client_id=client_id)
            row = Client(
                client_id=client_id,
                secret_hash=secret_hash,
                grants=list(grants),
                redirect_uris=list(redirect_uris),
                access_token_lifetime=access_token_lifetime,
                refresh_token_lifetime=refresh_token_lifetime,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateClient(f"client {client_id} already registered", client_id=client_id) from exc
            logger.info("client registered client_id=%s grants=%s", client_id, grants)
            return ClientView.from_row(row)

    def ensure_client(self, client_id: str, secret: str, grants: list[str], redirect_uris: list[str]) -> ClientView:
        """Register a bootstrap client unless it already exists."""

        try:
            return self.register_client(client_id, secret, grants, redirect_uris)
        except DuplicateClient:
            return self.resolve_client_by_id(client_id)

    def _load(self, client_id: str) -> Client:
        with self.session_factory() as db:
            row = db.get(Client, client_id)
        if row is None:
            raise UnknownClient(f"unknown client {client_id}")
        return row

    def resolve_client_by_id(self, client_id: str | None) -> ClientView:
        if not client_id:
            raise missing_parameter("client_id")
        return ClientView.from_row(self._load(client_id))

    def resolve_client_by_secret(self, client_id: str | None, secret: str | None) -> ClientView:
        """Authenticate a client by id and secret."""

        if not client_id:
            raise missing_parameter("client_id")
        if not secret:
            raise missing_parameter("client_secret")
        row = self._load(client_id)
        if not verify_secret(secret, row.secret_hash):
            raise InvalidClient(f"client secret mismatch for {client_id}")
        return ClientView.from_row(row)

    @staticmethod
    def validate_redirect_uri(client: ClientView, candidate: str) -> bool:
        # Prefix match: registered "https://host/app" admits "https://host/app/lobby".
        return any(candidate.startswith(prefix) for prefix in client.redirect_uris)

    @staticmethod
    def validate_grant_kind(client: ClientView, kind: str) -> bool:
        return kind in client.grants
