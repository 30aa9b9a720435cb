"""Wallet ledger: idempotency, sufficiency, serialization and reconciliation."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from walletgate.common.errors import InsufficientFunds, InvalidParameter, InvalidState
from walletgate.services.accounts.service import AccountService
from walletgate.services.grants.service import GrantService
from walletgate.services.ledger.service import LedgerService


def test_bet_debits_sum_of_legs(ledger, player):
    result = ledger.place_bets(player.user_id, "t1", [{"betAmount": 100}, {"betAmount": 200}])
    assert result.balance == Decimal("9700.00")
    assert result.tx_id == "t1"
    assert not result.replayed


def test_payoff_credits(ledger, player):
    ledger.place_bets(player.user_id, "t1", [{"betAmount": 300}])
    result = ledger.pay_payoffs(player.user_id, "t2", [{"payoffAmount": 1000}])
    assert result.balance == Decimal("10700.00")


def test_duplicate_bet_is_applied_once(ledger, player):
    """A retried txId returns the original result without debiting again."""

    first = ledger.place_bets(player.user_id, "t1", [{"betAmount": 100}])
    again = ledger.place_bets(player.user_id, "t1", [{"betAmount": 100}])
    assert again.replayed
    assert again.balance == first.balance
    assert ledger.get_balance(player.user_id) == Decimal("9900.00")


def test_replay_with_different_amount(ledger, player):
    ledger.place_bets(player.user_id, "t1", [{"betAmount": 100}])
    with pytest.raises(InvalidParameter) as exc_info:
        ledger.place_bets(player.user_id, "t1", [{"betAmount": 50}])
    assert exc_info.value.props == {"txId": "t1"}


def test_bet_and_payoff_may_share_tx_id(ledger, player):
    ledger.place_bets(player.user_id, "round-1", [{"betAmount": 100}])
    result = ledger.pay_payoffs(player.user_id, "round-1", [{"payoffAmount": 200}])
    assert not result.replayed
    assert result.balance == Decimal("10100.00")


def test_insufficient_funds_leaves_balance(ledger, player):
    with pytest.raises(InsufficientFunds) as exc_info:
        ledger.place_bets(player.user_id, "big", [{"betAmount": "10000.01"}])
    assert exc_info.value.props["balance"] == Decimal("10000.00")
    assert ledger.get_balance(player.user_id) == Decimal("10000.00")
    assert ledger.list_transactions(player.user_id) == []


def test_bet_may_drain_to_zero(ledger, player):
    assert ledger.place_bets(player.user_id, "all-in", [{"betAmount": 10000}]).balance == Decimal("0.00")


def test_amounts_round_half_up(ledger, player):
    result = ledger.place_bets(player.user_id, "t1", [{"betAmount": "0.005"}, {"betAmount": 0.1}])
    assert result.balance == Decimal("9999.89")


@pytest.mark.parametrize(
    "legs",
    [
        [],
        [{"betAmount": -1}],
        [{"betAmount": "abc"}],
        [{"betType": "PLAYER"}],
    ],
)
def test_invalid_legs_rejected(ledger, player, legs):
    with pytest.raises(InvalidParameter):
        ledger.place_bets(player.user_id, "bad", legs)
    assert ledger.get_balance(player.user_id) == Decimal("10000.00")


def test_missing_tx_id(ledger, player):
    with pytest.raises(InvalidParameter) as exc_info:
        ledger.place_bets(player.user_id, "", [{"betAmount": 1}])
    assert exc_info.value.props == {"parameter": "txId"}


def test_reversal_uses_caller_sign(ledger, player):
    """Reversals may go either way and skip the sufficiency check."""

    ledger.place_bets(player.user_id, "t1", [{"betAmount": 500}])
    assert ledger.reverse_transaction(player.user_id, "t1", 500).balance == Decimal("10000.00")
    assert ledger.reverse_transaction(player.user_id, "t9", Decimal("-20000")).balance == Decimal("-10000.00")


def test_reversal_requires_amount(ledger, player):
    with pytest.raises(InvalidParameter):
        ledger.reverse_transaction(player.user_id, "t1", None)


def test_inactive_user_rejected(ledger, accounts, player):
    accounts.set_user_active(player.username, False)
    with pytest.raises(InvalidState):
        ledger.place_bets(player.user_id, "t1", [{"betAmount": 1}])


def test_adjustment_is_logged(ledger, player):
    result = ledger.adjust_balance(player.user_id, "2500.50")
    assert result.balance == Decimal("2500.50")
    entries = ledger.list_transactions(player.user_id)
    assert entries[0]["kind"] == "adjustment"
    assert entries[0]["amount"] == Decimal("-7499.50")


def test_list_transactions_newest_first(ledger, player):
    ledger.place_bets(player.user_id, "t1", [{"betAmount": 1}])
    ledger.pay_payoffs(player.user_id, "t2", [{"payoffAmount": 2}])
    assert [e["txId"] for e in ledger.list_transactions(player.user_id)] == ["t2", "t1"]


def test_reconciliation_balanced(ledger, player):
    ledger.place_bets(player.user_id, "t1", [{"betAmount": 100}, {"betAmount": 200}])
    ledger.pay_payoffs(player.user_id, "t2", [{"payoffAmount": 1000}])
    ledger.reverse_transaction(player.user_id, "t1", 300)
    ledger.adjust_balance(player.user_id, 5000)

    report = ledger.reconcile(player.user_id)
    assert report["balanced"]
    assert report["entryCount"] == 4
    assert report["balance"] == Decimal("5000.00")
    assert report["openingBalance"] + report["netAmount"] == report["balance"]

    summary = ledger.reconciliation_report()
    assert summary == {"usersChecked": 1, "imbalancedCount": 0, "imbalancedUsers": []}


def test_concurrent_bets_never_overdraw(file_session_factory):
    """Twenty parallel bets of 100 against 1000 leave exactly ten applied."""

    ledger = LedgerService(file_session_factory)
    accounts = AccountService(file_session_factory, ledger, GrantService(file_session_factory), salt_rounds=4)
    user = accounts.create_user(currency="USD", balance=1000, language="en_US")

    def bet(i):
        try:
            ledger.place_bets(user.user_id, f"tx-{i}", [{"betAmount": 100}])
            return True
        except InsufficientFunds:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(bet, range(20)))

    assert outcomes.count(True) == 10
    assert ledger.get_balance(user.user_id) == Decimal("0.00")
    assert ledger.reconcile(user.user_id)["balanced"]


def test_concurrent_duplicates_apply_once(file_session_factory):
    ledger = LedgerService(file_session_factory)
    accounts = AccountService(file_session_factory, ledger, GrantService(file_session_factory), salt_rounds=4)
    user = accounts.create_user(currency="USD", balance=1000, language="en_US")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.place_bets(user.user_id, "same", [{"betAmount": 10}]), range(8)))

    assert sum(not r.replayed for r in results) == 1
    assert {r.balance for r in results} == {Decimal("990.00")}


@pytest.mark.parametrize("amount", ["1e30", "1e17"])
def test_oversized_amount_rejected(ledger, player, amount):
    """Amounts beyond the integer cents range are a parameter error, not a crash."""

    with pytest.raises(InvalidParameter):
        ledger.pay_payoffs(player.user_id, "huge", [{"payoffAmount": amount}])
    with pytest.raises(InvalidParameter):
        ledger.place_bets(player.user_id, "huge", [{"betAmount": amount}])
    assert ledger.get_balance(player.user_id) == Decimal("10000.00")


def test_balance_overflow_rejected(ledger, player):
    ledger.pay_payoffs(player.user_id, "p1", [{"payoffAmount": "90000000000000000"}])
    with pytest.raises(InvalidParameter):
        ledger.pay_payoffs(player.user_id, "p2", [{"payoffAmount": "90000000000000000"}])
    assert ledger.get_balance(player.user_id) == Decimal("90000000000010000.00")
    assert ledger.reconcile(player.user_id)["entryCount"] == 1
