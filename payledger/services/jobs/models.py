"""Payment and payroll job models.

Jobs carry two groups of fields: calculation fields fixed at creation (amounts,
tax breakdown, hash, pay period, participant snapshot) and operational fields
that move with the lifecycle. `version` guards every operational write.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Date, DateTime, Integer, String, event, func, inspect
from sqlalchemy.orm import Mapped, Session, mapped_column

from payledger.common.db import Base, JSONType
from payledger.common.errors import ImmutableFieldViolation
from payledger.common.money import from_minor_units


COMMON_IMMUTABLE_FIELDS = (
    "business_id",
    "currency",
    "calculation_hash",
    "calculation_version",
    "calculation_snapshot",
    "schedule_run_id",
)

MUTABLE_FIELDS = (
    "status",
    "error_message",
    "processed_at",
    "escrow_deposit_id",
    "settlement_window_id",
    "reservation_correlation_id",
    "dispatch_key",
    "retry_count",
    "permanently_failed_at",
    "failed_reason",
    "fee_released_manually_at",
    "funds_returned_manually_at",
    "released_by",
    "version",
    "updated_at",
)


class JobMixin:
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(String, index=True)
    currency: Mapped[str] = mapped_column(String(3))
    calculation_hash: Mapped[str] = mapped_column(String(64))
    calculation_version: Mapped[int] = mapped_column(Integer, default=1)
    calculation_snapshot: Mapped[dict] = mapped_column(JSONType)
    schedule_run_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_deposit_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    settlement_window_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    reservation_correlation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    dispatch_key: Mapped[str | None] = mapped_column(String, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    permanently_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    fee_released_manually_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    funds_returned_manually_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    @property
    def job_ref(self) -> str:
        return f"{self.job_type}:{self.id}"

    @property
    def payout(self) -> Decimal:
        return from_minor_units(self.payout_cents, self.currency)

    @property
    def is_dead_lettered(self) -> bool:
        return self.permanently_failed_at is not None


class PaymentJob(JobMixin, Base):
    """One fixed-amount payment to a recipient."""

    __tablename__ = "payment_jobs"

    job_type = "payment"
    immutable_fields = COMMON_IMMUTABLE_FIELDS + (
        "payment_schedule_id",
        "recipient_id",
        "amount_cents",
        "recipient_snapshot",
    )

    payment_schedule_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    recipient_id: Mapped[str] = mapped_column(String, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    recipient_snapshot: Mapped[dict] = mapped_column(JSONType)

    @property
    def payout_cents(self) -> int:
        return self.amount_cents

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents, self.currency)


class PayrollJob(JobMixin, Base):
    """One employee's pay for one pay period."""

    __tablename__ = "payroll_jobs"

    job_type = "payroll"
    immutable_fields = COMMON_IMMUTABLE_FIELDS + (
        "payroll_schedule_id",
        "employee_id",
        "gross_salary_cents",
        "paye_cents",
        "uif_cents",
        "sdl_cents",
        "adjustments",
        "net_salary_cents",
        "pay_period_start",
        "pay_period_end",
        "adjustment_inputs",
        "employee_snapshot",
    )

    payroll_schedule_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    employee_id: Mapped[str] = mapped_column(String, index=True)
    gross_salary_cents: Mapped[int] = mapped_column(Integer)
    paye_cents: Mapped[int] = mapped_column(Integer, default=0)
    uif_cents: Mapped[int] = mapped_column(Integer, default=0)
    sdl_cents: Mapped[int] = mapped_column(Integer, default=0)
    adjustments: Mapped[list] = mapped_column(JSONType, default=list)
    net_salary_cents: Mapped[int] = mapped_column(Integer)
    pay_period_start: Mapped[date] = mapped_column(Date, index=True)
    pay_period_end: Mapped[date] = mapped_column(Date)
    adjustment_inputs: Mapped[list] = mapped_column(JSONType, default=list)
    employee_snapshot: Mapped[dict] = mapped_column(JSONType)

    @property
    def payout_cents(self) -> int:
        return self.net_salary_cents

    @property
    def gross_salary(self) -> Decimal:
        return from_minor_units(self.gross_salary_cents, self.currency)

    @property
    def net_salary(self) -> Decimal:
        return from_minor_units(self.net_salary_cents, self.currency)


JOB_MODELS = {"payment": PaymentJob, "payroll": PayrollJob}


def job_models(job_type: str | None = None) -> list:
    """Resolve `payment`, `payroll` or `all`/None to model classes."""

    if job_type in (None, "all"):
        return [PayrollJob, PaymentJob]
    return [JOB_MODELS[job_type]]


class JobTimeline(Base):
    """Immutable audit trail of every job status transition."""

    __tablename__ = "job_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    job_type: Mapped[str] = mapped_column(String)
    job_id: Mapped[str] = mapped_column(String, index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


@event.listens_for(Session, "before_flush")
def reject_calculation_field_edits(session, flush_context, instances) -> None:
    """Refuse in-place ORM edits of calculation fields on persisted jobs."""

    for obj in session.dirty:
        if not isinstance(obj, JobMixin):
            continue
        state = inspect(obj)
        changed = [name for name in obj.immutable_fields if state.attrs[name].history.has_changes()]
        if changed:
            raise ImmutableFieldViolation(changed, job_id=obj.id, job_type=obj.job_type)
