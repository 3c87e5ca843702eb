"""Schedule models and the read-side participant rows they fan out over."""

from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Table, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payledger.common.db import Base


SCHEDULE_ACTIVE = "active"
SCHEDULE_PAUSED = "paused"
SCHEDULE_CANCELLED = "cancelled"
RECURRING = "recurring"
ONE_TIME = "one_time"


payment_schedule_recipients = Table(
    "payment_schedule_recipients",
    Base.metadata,
    Column("schedule_id", ForeignKey("payment_schedules.schedule_id"), primary_key=True),
    Column("recipient_id", ForeignKey("recipients.recipient_id"), primary_key=True),
)

payroll_schedule_employees = Table(
    "payroll_schedule_employees",
    Base.metadata,
    Column("schedule_id", ForeignKey("payroll_schedules.schedule_id"), primary_key=True),
    Column("employee_id", ForeignKey("employees.employee_id"), primary_key=True),
)


class Recipient(Base):
    """Third-party payee maintained by business CRUD screens."""

    __tablename__ = "recipients"

    recipient_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), index=True)
    name: Mapped[str] = mapped_column(String)
    account_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")


class Employee(Base):
    """Payroll participant maintained by business CRUD screens."""

    __tablename__ = "employees"

    employee_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), index=True)
    name: Mapped[str] = mapped_column(String)
    gross_salary_cents: Mapped[int] = mapped_column(Integer)
    uif_exempt: Mapped[bool] = mapped_column(Boolean, default=False)
    tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")


class Adjustment(Base):
    """Per-employee addition or deduction, recurring or bound to one period."""

    __tablename__ = "adjustments"

    adjustment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    employee_id: Mapped[str] = mapped_column(ForeignKey("employees.employee_id"), index=True)
    name: Mapped[str] = mapped_column(String)
    adjustment_type: Mapped[str] = mapped_column(String)  # deduction | addition
    amount_type: Mapped[str] = mapped_column(String, default="fixed")  # fixed | percentage
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    rate_bps: Mapped[int] = mapped_column(Integer, default=0)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ScheduleMixin:
    schedule_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), index=True)
    name: Mapped[str] = mapped_column(String)
    frequency: Mapped[str] = mapped_column(String)
    schedule_type: Mapped[str] = mapped_column(String, default=RECURRING)
    status: Mapped[str] = mapped_column(String, default=SCHEDULE_ACTIVE, index=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentSchedule(ScheduleMixin, Base):
    """Fixed-amount payment to every linked recipient on a cron cadence."""

    __tablename__ = "payment_schedules"

    job_type = "payment"

    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="ZAR")
    recipients: Mapped[list[Recipient]] = relationship(
        secondary=payment_schedule_recipients, order_by=Recipient.recipient_id
    )

    def participants(self) -> list[Recipient]:
        return [r for r in self.recipients if r.status == "active"]


class PayrollSchedule(ScheduleMixin, Base):
    """Payroll run for every linked employee on a cron cadence."""

    __tablename__ = "payroll_schedules"

    job_type = "payroll"

    employees: Mapped[list[Employee]] = relationship(
        secondary=payroll_schedule_employees, order_by=Employee.employee_id
    )

    def participants(self) -> list[Employee]:
        return [e for e in self.employees if e.status == "active"]
