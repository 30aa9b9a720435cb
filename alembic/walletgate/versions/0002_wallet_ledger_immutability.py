"""block UPDATE and DELETE on wallet_transactions

Applied entries are the audit trail that reconciliation replays, so the
database refuses to rewrite them on both supported backends.

Revision ID: 0002_wallet_immutability
Revises: 0001_walletgate
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_wallet_immutability"
down_revision = "0001_walletgate"
branch_labels = None
depends_on = None

MESSAGE = "wallet_transactions rows cannot be changed"

POSTGRES_UPGRADE = (
    f"""
    CREATE OR REPLACE FUNCTION wallet_transactions_reject_write()
    RETURNS trigger LANGUAGE plpgsql AS $$
    BEGIN
        RAISE EXCEPTION '{MESSAGE} (%)', TG_OP USING ERRCODE = 'integrity_constraint_violation';
    END;
    $$;
    """,
    """
    CREATE TRIGGER wallet_transactions_no_write
    BEFORE UPDATE OR DELETE ON wallet_transactions
    FOR EACH ROW EXECUTE FUNCTION wallet_transactions_reject_write();
    """,
)
POSTGRES_DOWNGRADE = (
    "DROP TRIGGER IF EXISTS wallet_transactions_no_write ON wallet_transactions",
    "DROP FUNCTION IF EXISTS wallet_transactions_reject_write()",
)

# sqlite triggers fire on a single event each.
SQLITE_UPGRADE = tuple(
    f"""
    CREATE TRIGGER wallet_transactions_no_{operation.lower()}
    BEFORE {operation} ON wallet_transactions
    BEGIN
        SELECT RAISE(ABORT, '{MESSAGE}');
    END
    """
    for operation in ("UPDATE", "DELETE")
)
SQLITE_DOWNGRADE = (
    "DROP TRIGGER IF EXISTS wallet_transactions_no_update",
    "DROP TRIGGER IF EXISTS wallet_transactions_no_delete",
)


def _statements(postgres, sqlite):
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        return postgres
    if dialect == "sqlite":
        return sqlite
    return ()


def upgrade() -> None:
    for statement in _statements(POSTGRES_UPGRADE, SQLITE_UPGRADE):
        op.execute(statement)


def downgrade() -> None:
    for statement in _statements(POSTGRES_DOWNGRADE, SQLITE_DOWNGRADE):
        op.execute(statement)
