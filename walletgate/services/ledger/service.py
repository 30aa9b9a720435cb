"""Wallet ledger: atomic, idempotent balance mutation per user.

Every mutation for one user runs under that user's lock and inside one
database transaction: conditional balance update, then the append-only
transaction row. Either both commit or neither does.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal
from time import perf_counter
from typing import Any, Iterable, Mapping
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from walletgate.common.errors import (
    InsufficientFunds,
    InvalidGrant,
    InvalidParameter,
    InvalidState,
    missing_parameter,
)
from walletgate.common.logging import logger
from walletgate.common.metrics import (
    insufficient_funds_total,
    wallet_replays_total,
    wallet_transaction_seconds,
    wallet_transactions_total,
)
from walletgate.common.money import MAX_CENTS, from_cents, in_range, to_cents, to_decimal
from walletgate.services.accounts.models import User
from walletgate.services.ledger.models import WalletTransaction

KIND_BET = "bet"
KIND_PAYOFF = "payoff"
KIND_REVERSAL = "reversal"
KIND_ADJUSTMENT = "adjustment"
KINDS = (KIND_BET, KIND_PAYOFF, KIND_REVERSAL, KIND_ADJUSTMENT)


@dataclass(frozen=True)
class LedgerResult:
    tx_id: str
    balance: Decimal
    replayed: bool = False


def _sum_legs(legs: Iterable[Mapping[str, Any]] | None, field: str) -> Decimal:
    """Sum per-leg amounts, each rounded to currency precision first."""

    if not legs:
        raise missing_parameter(field.replace("Amount", "s"))
    total = Decimal("0")
    for leg in legs:
        try:
            amount = to_decimal(leg[field])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidParameter(f"invalid {field} in {leg!r}", parameter=field) from exc
        if amount < 0:
            raise InvalidParameter(f"negative {field} {amount}", parameter=field)
        total += amount
    return total


class LedgerService:
    """Owns user balances and the wallet transaction log."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    @staticmethod
    def _find_entry(db, user_id: str, tx_id: str, kind: str) -> WalletTransaction | None:
        return db.execute(
            select(WalletTransaction).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.tx_id == tx_id,
                WalletTransaction.kind == kind,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _replay(entry: WalletTransaction, amount_cents: int) -> LedgerResult:
        if entry.amount_cents != amount_cents:
            raise InvalidParameter(
                f"txId {entry.tx_id} already applied with amount {from_cents(entry.amount_cents)}",
                txId=entry.tx_id,
            )
        wallet_replays_total.labels(kind=entry.kind).inc()
        logger.info("duplicate wallet transaction replayed tx_id=%s kind=%s", entry.tx_id, entry.kind)
        return LedgerResult(tx_id=entry.tx_id, balance=from_cents(entry.balance_after_cents), replayed=True)

    @staticmethod
    def _rejection(db, user_id: str, amount_cents: int) -> Exception:
        """Explain why the conditional update matched no row."""

        user = db.get(User, user_id)
        if user is None:
            return InvalidGrant(f"unknown user {user_id}")
        if not user.active:
            return InvalidState(f"user {user.username} is not active")
        if not in_range(user.balance_cents + amount_cents):
            return InvalidParameter(f"balance would overflow applying {amount_cents} cents", parameter="amount")
        insufficient_funds_total.inc()
        return InsufficientFunds(
            f"balance {from_cents(user.balance_cents)} cannot cover {from_cents(-amount_cents)}",
            balance=from_cents(user.balance_cents),
        )

    def apply_transaction(
        self,
        user_id: str,
        tx_id: str | None,
        amount,
        kind: str,
        details: dict | None = None,
    ) -> LedgerResult:
        """Apply one signed delta at most once per `(user_id, tx_id, kind)`."""

        if not tx_id:
            raise missing_parameter("txId")
        if kind not in KINDS:
            raise InvalidParameter(f"unknown transaction kind {kind}", parameter="kind")
        try:
            amount_cents = to_cents(amount)
        except ValueError as exc:
            raise InvalidParameter(f"invalid amount {amount!r}", parameter="amount") from exc
        if (kind == KIND_BET and amount_cents > 0) or (kind == KIND_PAYOFF and amount_cents < 0):
            raise InvalidParameter(f"amount sign does not match kind {kind}", parameter="amount")

        with wallet_transaction_seconds.labels(kind=kind).time():
            with self._user_lock(user_id), self.session_factory() as db:
                existing = self._find_entry(db, user_id, tx_id, kind)
                if existing is not None:
                    return self._replay(existing, amount_cents)

                conditions = [User.user_id == user_id, User.active.is_(True)]
                if kind == KIND_BET:
                    conditions.append(User.balance_cents + amount_cents >= 0)
                # Keep the new balance inside BIGINT without computing an overflowing sum in SQL.
                if amount_cents > 0:
                    conditions.append(User.balance_cents <= MAX_CENTS - amount_cents)
                elif amount_cents < 0:
                    conditions.append(User.balance_cents >= -MAX_CENTS - amount_cents)
                row = db.execute(
                    update(User)
                    .where(*conditions)
                    .values(balance_cents=User.balance_cents + amount_cents, version=User.version + 1)
                    .returning(User.balance_cents, User.version)
                    .execution_options(synchronize_session=False)
                ).first()
                if row is None:
                    db.rollback()
                    raise self._rejection(db, user_id, amount_cents)

                db.add(
                    WalletTransaction(
                        user_id=user_id,
                        tx_id=tx_id,
                        kind=kind,
                        amount_cents=amount_cents,
                        balance_after_cents=row.balance_cents,
                        sequence=row.version,
                        details=details or {},
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    # Another process applied the same key first; its row is the answer.
                    db.rollback()
                    existing = self._find_entry(db, user_id, tx_id, kind)
                    if existing is None:
                        raise
                    return self._replay(existing, amount_cents)

        wallet_transactions_total.labels(kind=kind).inc()
        logger.info(
            "wallet transaction applied user_id=%s tx_id=%s kind=%s amount_cents=%s balance_cents=%s",
            user_id,
            tx_id,
            kind,
            amount_cents,
            row.balance_cents,
        )
        return LedgerResult(tx_id=tx_id, balance=from_cents(row.balance_cents))

    def place_bets(self, user_id: str, tx_id: str | None, bets, details: dict | None = None) -> LedgerResult:
        total = _sum_legs(bets, "betAmount")
        return self.apply_transaction(user_id, tx_id, -total, KIND_BET, {**(details or {}), "bets": list(bets)})

    def pay_payoffs(self, user_id: str, tx_id: str | None, payoffs, details: dict | None = None) -> LedgerResult:
        total = _sum_legs(payoffs, "payoffAmount")
        return self.apply_transaction(
            user_id, tx_id, total, KIND_PAYOFF, {**(details or {}), "payoffs": list(payoffs)}
        )

    def reverse_transaction(
        self, user_id: str, tx_id: str | None, reversal_amount, details: dict | None = None
    ) -> LedgerResult:
        """Apply a caller-signed correction; no sufficiency check."""

        if reversal_amount is None:
            raise missing_parameter("reversalAmount")
        return self.apply_transaction(user_id, tx_id, reversal_amount, KIND_REVERSAL, details)

    def adjust_balance(self, user_id: str, new_balance) -> LedgerResult:
        """Administrative set-balance, recorded as an adjustment entry."""

        try:
            target_cents = to_cents(new_balance)
        except ValueError as exc:
            raise InvalidParameter(f"invalid balance {new_balance!r}", parameter="balance") from exc
        if target_cents < 0:
            raise InvalidParameter(f"invalid balance {new_balance}", parameter="balance")
        with self._user_lock(user_id), self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise InvalidGrant(f"unknown user {user_id}")
            current_cents = user.balance_cents
            delta = target_cents - current_cents
            row = db.execute(
                update(User)
                .where(User.user_id == user_id, User.balance_cents == current_cents)
                .values(balance_cents=target_cents, version=User.version + 1)
                .returning(User.balance_cents, User.version)
                .execution_options(synchronize_session=False)
            ).first()
            if row is None:
                db.rollback()
                raise InvalidState(f"balance of user {user_id} changed concurrently")
            tx_id = f"adjustment:{uuid4()}"
            db.add(
                WalletTransaction(
                    user_id=user_id,
                    tx_id=tx_id,
                    kind=KIND_ADJUSTMENT,
                    amount_cents=delta,
                    balance_after_cents=row.balance_cents,
                    sequence=row.version,
                    details={"previousBalance": str(from_cents(current_cents))},
                )
            )
            db.commit()
        wallet_transactions_total.labels(kind=KIND_ADJUSTMENT).inc()
        logger.info("balance adjusted user_id=%s delta_cents=%s", user_id, delta)
        return LedgerResult(tx_id=tx_id, balance=from_cents(row.balance_cents))

    def get_balance(self, user_id: str) -> Decimal:
        with self.session_factory() as db:
            user = db.get(User, user_id)
        if user is None:
            raise InvalidGrant(f"unknown user {user_id}")
        return from_cents(user.balance_cents)

    def list_transactions(self, user_id: str, limit: int = 100) -> list[dict]:
        with self.session_factory() as db:
            entries = (
                db.execute(
                    select(WalletTransaction)
                    .where(WalletTransaction.user_id == user_id)
                    .order_by(WalletTransaction.sequence.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        return [
            {
                "txId": e.tx_id,
                "kind": e.kind,
                "amount": from_cents(e.amount_cents),
                "balance": from_cents(e.balance_after_cents),
                "details": e.details,
                "createdAt": e.created_at,
            }
            for e in entries
        ]

    def reconcile(self, user_id: str) -> dict:
        """Check opening balance plus all entries equals the current balance."""

        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise InvalidGrant(f"unknown user {user_id}")
            entries = (
                db.execute(
                    select(WalletTransaction)
                    .where(WalletTransaction.user_id == user_id)
                    .order_by(WalletTransaction.sequence.asc())
                )
                .scalars()
                .all()
            )
        running = user.opening_balance_cents
        breaks = []
        for entry in entries:
            running += entry.amount_cents
            if running != entry.balance_after_cents:
                breaks.append({"txId": entry.tx_id, "kind": entry.kind, "sequence": entry.sequence})
                running = entry.balance_after_cents
        total = sum(e.amount_cents for e in entries)
        return {
            "userId": user.user_id,
            "username": user.username,
            "balanced": not breaks and user.opening_balance_cents + total == user.balance_cents,
            "openingBalance": from_cents(user.opening_balance_cents),
            "netAmount": from_cents(total),
            "balance": from_cents(user.balance_cents),
            "entryCount": len(entries),
            "breaks": breaks,
        }

    def reconciliation_report(self, limit: int = 1000) -> dict:
        with self.session_factory() as db:
            user_ids = db.execute(select(User.user_id).order_by(User.user_id).limit(limit)).scalars().all()
        results = [self.reconcile(user_id) for user_id in user_ids]
        imbalanced = [r for r in results if not r["balanced"]]
        return {
            "usersChecked": len(results),
            "imbalancedCount": len(imbalanced),
            "imbalancedUsers": imbalanced,
        }
