"""initial payledger schema

Revision ID: 0001_payledger
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_payledger"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _job_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("calculation_hash", sa.String(length=64), nullable=False),
        sa.Column("calculation_version", sa.Integer(), nullable=False),
        sa.Column("calculation_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("schedule_run_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_deposit_id", sa.String(), nullable=True),
        sa.Column("settlement_window_id", sa.Integer(), nullable=True),
        sa.Column("reservation_correlation_id", sa.String(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("permanently_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_reason", sa.String(), nullable=True),
        sa.Column("fee_released_manually_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("funds_returned_manually_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_by", sa.String(), nullable=True),
        *_timestamps(),
    ]


def _job_indexes(table: str) -> None:
    for column in ("business_id", "schedule_run_id", "status", "escrow_deposit_id", "settlement_window_id", "updated_at"):
        op.create_index(f"ix_{table}_{column}", table, [column])


def upgrade() -> None:
    op.create_table(
        "businesses",
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("escrow_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frozen_reason", sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("business_id"),
    )
    op.create_index("ix_businesses_status", "businesses", ["status"])

    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("account_id"),
    )
    op.create_index("ix_accounts_business_id", "accounts", ["business_id"])
    op.create_index("ix_accounts_account_type", "accounts", ["account_type"])

    op.create_table(
        "ledger_sequences",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("amount_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("posting_state", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reversal_of_id", sa.String(), nullable=True),
        sa.Column("reversed_by_id", sa.String(), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"]),
        sa.ForeignKeyConstraint(["reversal_of_id"], ["ledger_entries.entry_id"]),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("reversal_of_id"),
        sa.CheckConstraint("amount_minor_units > 0", name="ck_ledger_entries_positive_amount"),
    )
    op.create_index("ix_ledger_entries_sequence_number", "ledger_entries", ["sequence_number"], unique=True)
    for column in ("correlation_id", "account_id", "business_id", "account_type", "posting_state", "reference_id"):
        op.create_index(f"ix_ledger_entries_{column}", "ledger_entries", [column])

    op.create_table(
        "balance_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("balance_minor_units", sa.Integer(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("entry_count", sa.Integer(), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_type", "business_id", "snapshot_date", name="uq_balance_snapshot"),
    )
    op.create_index("ix_balance_snapshots_business_id", "balance_snapshots", ["business_id"])
    op.create_index("ix_balance_snapshots_snapshot_date", "balance_snapshots", ["snapshot_date"])

    op.create_table(
        "escrow_deposits",
        sa.Column("deposit_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("fee_cents", sa.Integer(), nullable=False),
        sa.Column("authorized_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("ledger_correlation_id", sa.String(), nullable=True),
        sa.Column("deposited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.business_id"]),
        sa.PrimaryKeyConstraint("deposit_id"),
    )
    op.create_index("ix_escrow_deposits_business_id", "escrow_deposits", ["business_id"])
    op.create_index("ix_escrow_deposits_status", "escrow_deposits", ["status"])

    op.create_table(
        "recipients",
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("account_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.business_id"]),
        sa.PrimaryKeyConstraint("recipient_id"),
    )
    op.create_index("ix_recipients_business_id", "recipients", ["business_id"])

    op.create_table(
        "employees",
        sa.Column("employee_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("gross_salary_cents", sa.Integer(), nullable=False),
        sa.Column("uif_exempt", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tax_number", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.business_id"]),
        sa.PrimaryKeyConstraint("employee_id"),
    )
    op.create_index("ix_employees_business_id", "employees", ["business_id"])

    op.create_table(
        "adjustments",
        sa.Column("adjustment_id", sa.String(), nullable=False),
        sa.Column("employee_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("adjustment_type", sa.String(), nullable=False),
        sa.Column("amount_type", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.employee_id"]),
        sa.PrimaryKeyConstraint("adjustment_id"),
    )
    op.create_index("ix_adjustments_employee_id", "adjustments", ["employee_id"])

    for table, extra in (
        (
            "payment_schedules",
            [
                sa.Column("amount_cents", sa.Integer(), nullable=False),
                sa.Column("currency", sa.String(length=3), nullable=False),
            ],
        ),
        ("payroll_schedules", []),
    ):
        op.create_table(
            table,
            sa.Column("schedule_id", sa.String(), nullable=False),
            sa.Column("business_id", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("frequency", sa.String(), nullable=False),
            sa.Column("schedule_type", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            *extra,
            *_timestamps(),
            sa.ForeignKeyConstraint(["business_id"], ["businesses.business_id"]),
            sa.PrimaryKeyConstraint("schedule_id"),
        )
        op.create_index(f"ix_{table}_business_id", table, ["business_id"])
        op.create_index(f"ix_{table}_status", table, ["status"])
        op.create_index(f"ix_{table}_next_run_at", table, ["next_run_at"])

    op.create_table(
        "payment_schedule_recipients",
        sa.Column("schedule_id", sa.String(), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["payment_schedules.schedule_id"]),
        sa.ForeignKeyConstraint(["recipient_id"], ["recipients.recipient_id"]),
        sa.PrimaryKeyConstraint("schedule_id", "recipient_id"),
    )
    op.create_table(
        "payroll_schedule_employees",
        sa.Column("schedule_id", sa.String(), nullable=False),
        sa.Column("employee_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["payroll_schedules.schedule_id"]),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.employee_id"]),
        sa.PrimaryKeyConstraint("schedule_id", "employee_id"),
    )

    op.create_table(
        "payment_jobs",
        *_job_columns(),
        sa.Column("payment_schedule_id", sa.String(), nullable=True),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("recipient_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _job_indexes("payment_jobs")
    op.create_index("ix_payment_jobs_payment_schedule_id", "payment_jobs", ["payment_schedule_id"])
    op.create_index("ix_payment_jobs_recipient_id", "payment_jobs", ["recipient_id"])

    op.create_table(
        "payroll_jobs",
        *_job_columns(),
        sa.Column("payroll_schedule_id", sa.String(), nullable=True),
        sa.Column("employee_id", sa.String(), nullable=False),
        sa.Column("gross_salary_cents", sa.Integer(), nullable=False),
        sa.Column("paye_cents", sa.Integer(), nullable=False),
        sa.Column("uif_cents", sa.Integer(), nullable=False),
        sa.Column("sdl_cents", sa.Integer(), nullable=False),
        sa.Column("adjustments", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("net_salary_cents", sa.Integer(), nullable=False),
        sa.Column("pay_period_start", sa.Date(), nullable=False),
        sa.Column("pay_period_end", sa.Date(), nullable=False),
        sa.Column("adjustment_inputs", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("employee_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _job_indexes("payroll_jobs")
    op.create_index("ix_payroll_jobs_payroll_schedule_id", "payroll_jobs", ["payroll_schedule_id"])
    op.create_index("ix_payroll_jobs_employee_id", "payroll_jobs", ["employee_id"])
    op.create_index("ix_payroll_jobs_pay_period_start", "payroll_jobs", ["pay_period_start"])

    op.create_table(
        "job_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_job_timeline_job_id", "job_timeline", ["job_id"])

    op.create_table(
        "settlement_windows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("window_type", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_token", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("window_type", "window_start", name="uq_settlement_window"),
    )
    op.create_index("ix_settlement_windows_window_start", "settlement_windows", ["window_start"])
    op.create_index("ix_settlement_windows_status", "settlement_windows", ["status"])

    op.create_table(
        "reconciliation_discrepancies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("discrepancy_type", sa.String(), nullable=False),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("stored_balance_cents", sa.Integer(), nullable=False),
        sa.Column("calculated_balance_cents", sa.Integer(), nullable=False),
        sa.Column("ledger_balance_cents", sa.Integer(), nullable=False),
        sa.Column("difference_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("auto_fixed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("detected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("compensated_by", sa.String(), nullable=True),
        sa.Column("compensated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reconciliation_discrepancies_business_id", "reconciliation_discrepancies", ["business_id"])
    op.create_index("ix_reconciliation_discrepancies_status", "reconciliation_discrepancies", ["status"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("business_id", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_business_id", "audit_events", ["business_id"])

    op.create_table(
        "lock_leases",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_lock_leases_expires_at", "lock_leases", ["expires_at"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    for table in (
        "outbox_events",
        "lock_leases",
        "audit_events",
        "reconciliation_discrepancies",
        "settlement_windows",
        "job_timeline",
        "payroll_jobs",
        "payment_jobs",
        "payroll_schedule_employees",
        "payment_schedule_recipients",
        "payroll_schedules",
        "payment_schedules",
        "adjustments",
        "employees",
        "recipients",
        "escrow_deposits",
        "balance_snapshots",
        "ledger_entries",
        "ledger_sequences",
        "accounts",
        "businesses",
    ):
        op.drop_table(table)
