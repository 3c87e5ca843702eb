"""gateway dispatch key on jobs

Revision ID: 0004_job_dispatch_key
Revises: 0003_job_calculation_immutability
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op


revision = "0004_job_dispatch_key"
down_revision = "0003_job_calculation_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    for table in ("payment_jobs", "payroll_jobs"):
        op.add_column(table, sa.Column("dispatch_key", sa.String(), nullable=True))


def downgrade() -> None:
    for table in ("payroll_jobs", "payment_jobs"):
        op.drop_column(table, "dispatch_key")
