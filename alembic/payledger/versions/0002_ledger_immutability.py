"""enforce append-only ledger entries

Revision ID: 0002_ledger_immutability
Revises: 0001_payledger
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_payledger"
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
            IF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION 'ledger_entries is append-only; DELETE is not allowed';
            END IF;
            IF (NEW.entry_id, NEW.sequence_number, NEW.correlation_id, NEW.account_id,
                NEW.business_id, NEW.account_type, NEW.transaction_type, NEW.amount_minor_units,
                NEW.currency, NEW.description, NEW.reference_type, NEW.reference_id,
                NEW.reversal_of_id, NEW.created_at)
               IS DISTINCT FROM
               (OLD.entry_id, OLD.sequence_number, OLD.correlation_id, OLD.account_id,
                OLD.business_id, OLD.account_type, OLD.transaction_type, OLD.amount_minor_units,
                OLD.currency, OLD.description, OLD.reference_type, OLD.reference_id,
                OLD.reversal_of_id, OLD.created_at)
               OR NEW.details::text IS DISTINCT FROM OLD.details::text THEN
                RAISE EXCEPTION 'ledger_entries % may only change posting_state, posted_at or reversed_by_id', OLD.entry_id;
            END IF;
            IF OLD.reversed_by_id IS NOT NULL AND NEW.reversed_by_id IS DISTINCT FROM OLD.reversed_by_id THEN
                RAISE EXCEPTION 'ledger_entries % is already reversed', OLD.entry_id;
            END IF;
            IF NEW.posting_state IS DISTINCT FROM OLD.posting_state
               AND NOT (OLD.posting_state = 'PENDING' AND NEW.posting_state IN ('POSTED', 'REVERSED'))
               AND NOT (OLD.posting_state = 'POSTED' AND NEW.posting_state = 'REVERSED') THEN
                RAISE EXCEPTION 'ledger_entries % cannot move from % to %', OLD.entry_id, OLD.posting_state, NEW.posting_state;
            END IF;
            RETURN NEW;
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


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_immutable ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS prevent_ledger_entry_mutation();")
