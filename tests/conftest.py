"""Shared fixtures: in-memory store, a controllable clock and wired services."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from walletgate.common.config import WalletGateSettings
from walletgate.common.db import create_schema, make_engine, make_session_factory
from walletgate.services.accounts.service import AccountService
from walletgate.services.api_gateway.main import create_app
from walletgate.services.grants.service import GrantService
from walletgate.services.ledger.service import LedgerService
from walletgate.services.registry.service import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, ClientRegistry

CLIENT_ID = "1"
CLIENT_SECRET = "1"
REDIRECT_URI = "http://localhost/lobby"
API_KEY = "test-api-key"


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    return ClientRegistry(session_factory, salt_rounds=4)


@pytest.fixture
def grants(session_factory, clock):
    return GrantService(
        session_factory,
        auth_code_ttl_seconds=60,
        access_token_ttl_seconds=3600,
        refresh_token_ttl_seconds=86400,
        clock=clock,
    )


@pytest.fixture
def ledger(session_factory):
    return LedgerService(session_factory)


@pytest.fixture
def accounts(session_factory, ledger, grants, clock):
    return AccountService(
        session_factory,
        ledger,
        grants,
        salt_rounds=4,
        guest_ttl_seconds=3600,
        initial_guest_balance=Decimal("100000"),
        clock=clock,
    )


@pytest.fixture
def client_view(registry):
    return registry.register_client(
        CLIENT_ID, CLIENT_SECRET, [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN], ["http://localhost"]
    )


@pytest.fixture
def player(accounts):
    return accounts.create_user(
        username="alice@example.com",
        password="pw",
        currency="USD",
        balance=Decimal("10000"),
        language="en-US",
    )


@pytest.fixture
def settings():
    return WalletGateSettings(
        database_url="sqlite://",
        password_salt_rounds=4,
        seed_players=False,
        api_key=API_KEY,
        session_secret="test-session",
        purge_interval_seconds=3600,
        oauth_client_id="DEFAULT",
        _env_file=None,
    )


@pytest.fixture
def app(settings, engine, clock):
    return create_app(settings, engine=engine, clock=clock)


@pytest.fixture
def http(app):
    # Entering the client runs the lifespan: schema, bootstrap client "1".
    with TestClient(app, follow_redirects=False) as client:
        yield client


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed store for tests that hit it from several threads."""

    engine = make_engine(f"sqlite:///{tmp_path / 'walletgate.db'}")
    create_schema(engine)
    yield make_session_factory(engine)
    engine.dispose()
