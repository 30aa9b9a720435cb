"""Wallet transaction log model."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from walletgate.common.db import Base, JSONType


class WalletTransaction(Base):
    """Immutable record of one applied balance delta.

    `(user_id, tx_id, kind)` is the idempotency key: a bet and the payoff of
    the same round may share a caller tx id, a retried bet may not.
    """

    __tablename__ = "wallet_transactions"
    __table_args__ = (UniqueConstraint("user_id", "tx_id", "kind", name="uq_wallet_tx_idempotency"),)

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), index=True)
    tx_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger)
    # Owner's `users.version` after this entry; orders the per-user log.
    sequence: Mapped[int] = mapped_column(BigInteger)
    details: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
