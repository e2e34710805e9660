"""enforce immutable transactions and order timeline

Revision ID: 0002_ledger_immutability
Revises: 0001_storefront
Create Date: 2026-10-16
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_storefront"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_append_only_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    for table in ("transactions", "order_timeline"):
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION prevent_append_only_mutation();
            """
        )


def downgrade() -> None:
    for table in ("transactions", "order_timeline"):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table};")
    op.execute("DROP FUNCTION IF EXISTS prevent_append_only_mutation();")
