"""enforce immutable ledger entries

Revision ID: 0002_ledger_immutability
Revises: 0001_payments
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_ledger_entry_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_immutable
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION prevent_ledger_entry_mutation();
        """
    )
    # One reversal per original entry.
    op.create_index(
        "ux_ledger_entries_reversed_entry_id",
        "ledger_entries",
        ["reversed_entry_id"],
        unique=True,
        postgresql_where="reversed_entry_id IS NOT NULL",
    )


def downgrade() -> None:
    op.drop_index("ux_ledger_entries_reversed_entry_id", table_name="ledger_entries")
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_immutable ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS prevent_ledger_entry_mutation();")
