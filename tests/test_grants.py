"""Grant engine: single-use codes, rotation, expiry and revocation."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from walletgate.common.errors import InvalidGrant, InvalidParameter, InvalidState
from walletgate.services.accounts.models import User
from walletgate.services.accounts.service import AccountService
from walletgate.services.grants.models import AuthorizationCode, Token
from walletgate.services.grants.service import GrantService
from walletgate.services.ledger.service import LedgerService
from walletgate.services.registry.service import GRANT_AUTHORIZATION_CODE, ClientRegistry

from conftest import REDIRECT_URI


def test_code_is_single_use(grants, client_view, player):
    """A second redemption of the same code always fails."""

    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    redeemed = grants.redeem_authorization_code(issued.code, client_view)
    assert redeemed.user.user_id == player.user_id
    assert redeemed.redirect_uri == REDIRECT_URI

    with pytest.raises(InvalidGrant):
        grants.redeem_authorization_code(issued.code, client_view)


def test_code_stored_as_digest(grants, client_view, player, session_factory):
    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    with session_factory() as db:
        rows = db.query(AuthorizationCode).all()
    assert len(rows) == 1
    assert rows[0].code_hash != issued.code


def test_code_expires(grants, client_view, player, clock):
    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    clock.advance(61)
    with pytest.raises(InvalidGrant):
        grants.redeem_authorization_code(issued.code, client_view)


def test_code_bound_to_client(grants, registry, client_view, player):
    """Another client cannot redeem the code, and the code is consumed anyway."""

    other = registry.register_client("2", "2", [GRANT_AUTHORIZATION_CODE], ["http://localhost"])
    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    with pytest.raises(InvalidGrant):
        grants.redeem_authorization_code(issued.code, other)
    with pytest.raises(InvalidGrant):
        grants.redeem_authorization_code(issued.code, client_view)


def test_issue_rejects_unregistered_redirect(grants, client_view, player):
    with pytest.raises(InvalidParameter) as exc_info:
        grants.issue_authorization_code("https://evil.example/cb", client_view, player)
    assert exc_info.value.props["parameter"] == "redirect_uri"


def test_issue_requires_redirect(grants, client_view, player):
    with pytest.raises(InvalidParameter):
        grants.issue_authorization_code(None, client_view, player)


def test_concurrent_redemption_has_one_winner(file_session_factory, clock):
    registry = ClientRegistry(file_session_factory, salt_rounds=4)
    grants = GrantService(file_session_factory, clock=clock)
    accounts = AccountService(file_session_factory, LedgerService(file_session_factory), grants, salt_rounds=4)
    client = registry.register_client("1", "1", [GRANT_AUTHORIZATION_CODE], ["http://localhost"])
    user = accounts.create_user(currency="USD", balance=10, language="en_US")
    issued = grants.issue_authorization_code(REDIRECT_URI, client, user)

    def redeem():
        try:
            grants.redeem_authorization_code(issued.code, client)
            return True
        except InvalidGrant:
            return False

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(lambda _: redeem(), range(4)))
    assert outcomes.count(True) == 1


def test_token_pair_shares_session(grants, client_view, player, session_factory):
    pair = grants.issue_token_pair(client_view, player)
    assert pair.access_token != pair.refresh_token
    assert pair.expires_in == 3600
    with session_factory() as db:
        rows = db.query(Token).all()
    assert {row.session_id for row in rows} == {pair.session_id}
    assert {row.token_type for row in rows} == {"access", "refresh"}


def test_client_lifetime_overrides_default(grants, registry, player):
    client = registry.register_client(
        "short", "s", [GRANT_AUTHORIZATION_CODE], ["http://localhost"], access_token_lifetime=120
    )
    assert grants.issue_token_pair(client, player).expires_in == 120


def test_refresh_rotation(grants, client_view, player):
    """Rotation consumes the refresh token; the old access token lives on."""

    first = grants.issue_token_pair(client_view, player)
    second = grants.redeem_refresh_token(first.refresh_token, client_view)

    assert second.session_id != first.session_id
    assert grants.resolve_access_token(second.access_token).user.user_id == player.user_id
    assert grants.resolve_access_token(first.access_token).session_id == first.session_id
    with pytest.raises(InvalidGrant):
        grants.redeem_refresh_token(first.refresh_token, client_view)


def test_access_token_is_not_a_refresh_token(grants, client_view, player):
    pair = grants.issue_token_pair(client_view, player)
    with pytest.raises(InvalidGrant):
        grants.redeem_refresh_token(pair.access_token, client_view)


def test_expired_refresh_token(grants, client_view, player, clock):
    pair = grants.issue_token_pair(client_view, player)
    clock.advance(86401)
    with pytest.raises(InvalidGrant):
        grants.redeem_refresh_token(pair.refresh_token, client_view)


def test_access_token_expiry(grants, client_view, player, clock):
    pair = grants.issue_token_pair(client_view, player)
    clock.advance(3599)
    assert grants.resolve_access_token(pair.access_token).user.username == player.username
    clock.advance(1)
    with pytest.raises(InvalidGrant):
        grants.resolve_access_token(pair.access_token)


def test_inactive_user_cannot_redeem(grants, client_view, player, session_factory):
    """A code issued before the user was disabled yields InvalidState."""

    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    with session_factory() as db:
        db.get(User, player.user_id).active = False
        db.commit()
    with pytest.raises(InvalidState):
        grants.redeem_authorization_code(issued.code, client_view)


def test_deactivation_revokes_outstanding_grants(grants, accounts, client_view, player):
    issued = grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    pair = grants.issue_token_pair(client_view, player)
    accounts.set_user_active(player.username, False)
    with pytest.raises(InvalidGrant):
        grants.redeem_authorization_code(issued.code, client_view)
    with pytest.raises(InvalidGrant):
        grants.resolve_access_token(pair.access_token)


def test_revoke_tokens(grants, client_view, player):
    pair = grants.issue_token_pair(client_view, player)
    assert grants.revoke_access_token(pair.access_token)
    assert not grants.revoke_access_token(pair.access_token)
    with pytest.raises(InvalidGrant):
        grants.resolve_access_token(pair.access_token)
    assert grants.revoke_refresh_token(pair.refresh_token)


def test_revoke_user_grants(grants, client_view, player):
    grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    grants.issue_token_pair(client_view, player)
    assert grants.revoke_user_grants(player.user_id) == 3


def test_purge_expired(grants, client_view, player, clock):
    grants.issue_authorization_code(REDIRECT_URI, client_view, player)
    pair = grants.issue_token_pair(client_view, player)
    clock.advance(3600)
    counts = grants.purge_expired()
    assert counts == {"authorization_codes": 1, "tokens": 1}
    assert grants.redeem_refresh_token(pair.refresh_token, client_view).access_token
