"""reject edits to job calculation fields

Revision ID: 0003_job_calculation_immutability
Revises: 0002_ledger_immutability
Create Date: 2026-10-19
"""

from alembic import op


revision = "0003_job_calculation_immutability"
down_revision = "0002_ledger_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payment_job_calculation_edit()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF (NEW.business_id, NEW.currency, NEW.calculation_hash, NEW.calculation_version,
                NEW.schedule_run_id, NEW.payment_schedule_id, NEW.recipient_id, NEW.amount_cents)
               IS DISTINCT FROM
               (OLD.business_id, OLD.currency, OLD.calculation_hash, OLD.calculation_version,
                OLD.schedule_run_id, OLD.payment_schedule_id, OLD.recipient_id, OLD.amount_cents)
               OR NEW.calculation_snapshot::text IS DISTINCT FROM OLD.calculation_snapshot::text
               OR NEW.recipient_snapshot::text IS DISTINCT FROM OLD.recipient_snapshot::text THEN
                RAISE EXCEPTION 'payment_jobs % calculation fields are immutable', OLD.id;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payroll_job_calculation_edit()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF (NEW.business_id, NEW.currency, NEW.calculation_hash, NEW.calculation_version,
                NEW.schedule_run_id, NEW.payroll_schedule_id, NEW.employee_id,
                NEW.gross_salary_cents, NEW.paye_cents, NEW.uif_cents, NEW.sdl_cents,
                NEW.pay_period_start, NEW.pay_period_end)
               IS DISTINCT FROM
               (OLD.business_id, OLD.currency, OLD.calculation_hash, OLD.calculation_version,
                OLD.schedule_run_id, OLD.payroll_schedule_id, OLD.employee_id,
                OLD.gross_salary_cents, OLD.paye_cents, OLD.uif_cents, OLD.sdl_cents,
                OLD.pay_period_start, OLD.pay_period_end)
               OR NEW.calculation_snapshot::text IS DISTINCT FROM OLD.calculation_snapshot::text
               OR NEW.adjustments::text IS DISTINCT FROM OLD.adjustments::text
               OR NEW.adjustment_inputs::text IS DISTINCT FROM OLD.adjustment_inputs::text
               OR NEW.employee_snapshot::text IS DISTINCT FROM OLD.employee_snapshot::text THEN
                RAISE EXCEPTION 'payroll_jobs % calculation fields are immutable', OLD.id;
            END IF;
            -- the only allowed calculation edit: a negative net corrected to zero
            IF NEW.net_salary_cents IS DISTINCT FROM OLD.net_salary_cents
               AND NOT (OLD.net_salary_cents < 0 AND NEW.net_salary_cents = 0) THEN
                RAISE EXCEPTION 'payroll_jobs % net_salary_cents is immutable', OLD.id;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_jobs_calculation_immutable
        BEFORE UPDATE ON payment_jobs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payment_job_calculation_edit();
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payroll_jobs_calculation_immutable
        BEFORE UPDATE ON payroll_jobs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payroll_job_calculation_edit();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payroll_jobs_calculation_immutable ON payroll_jobs;")
    op.execute("DROP TRIGGER IF EXISTS trg_payment_jobs_calculation_immutable ON payment_jobs;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payroll_job_calculation_edit();")
    op.execute("DROP FUNCTION IF EXISTS prevent_payment_job_calculation_edit();")
