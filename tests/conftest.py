"""Shared fixtures: in-memory SQLite, a frozen clock and fully wired services."""

import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["LOCK_DRIVER"] = "database"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

from datetime import date, datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402

from payledger.common.clock import FrozenClock  # noqa: E402
from payledger.common.config import CommonSettings  # noqa: E402
from payledger.common.db import Base, SessionLocal, engine  # noqa: E402
from payledger.services.escrow.models import Business  # noqa: E402
from payledger.services.jobs.models import PayrollJob  # noqa: E402
from payledger.services.registry import build_services  # noqa: E402
from payledger.services.schedules.models import (  # noqa: E402
    RECURRING,
    SCHEDULE_ACTIVE,
    Adjustment,
    Employee,
    PaymentSchedule,
    PayrollSchedule,
    Recipient,
)
from payledger.services.settlement.gateway import GatewayResult  # noqa: E402


NOW = datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)
FEBRUARY = (date(2026, 2, 1), date(2026, 2, 28))


class FakeGateway:
    """Records dispatches; jobs listed in `declined` are refused."""

    def __init__(self) -> None:
        self.dispatches = []
        self.declined: set[str] = set()

    def execute(self, dispatch):
        self.dispatches.append(dispatch)
        if dispatch.job_id in self.declined:
            return GatewayResult(succeeded=False, error="beneficiary account closed")
        return GatewayResult(succeeded=True, reference=f"ref-{len(self.dispatches)}")


class Factory:
    """Builds businesses, participants, schedules and jobs through real services."""

    def __init__(self, services, clock) -> None:
        self.services = services
        self.clock = clock

    def business(self, name: str = "Acme Trading", currency: str = "ZAR", **overrides) -> str:
        now = self.clock.now()
        with SessionLocal() as db:
            business = Business(
                name=name,
                currency=currency,
                status=overrides.pop("status", "active"),
                escrow_balance_cents=0,
                created_at=now,
                updated_at=now,
                **overrides,
            )
            db.add(business)
            db.commit()
            return business.business_id

    def deposit(self, business_id: str, amount_cents: int, fee_cents: int = 0, confirm: bool = True):
        deposit = self.services.escrow.create_deposit(business_id, amount_cents, fee_cents=fee_cents)
        if confirm:
            deposit = self.services.escrow.confirm_deposit(deposit.deposit_id)
        return deposit

    def funded_business(self, amount_cents: int = 10_000_000) -> str:
        business_id = self.business()
        self.deposit(business_id, amount_cents)
        return business_id

    def employee(
        self,
        business_id: str,
        gross_salary_cents: int = 3_000_000,
        uif_exempt: bool = False,
        adjustments: tuple[dict, ...] = (),
        name: str = "Thandi Nkosi",
    ) -> Employee:
        with SessionLocal() as db:
            employee = Employee(
                business_id=business_id,
                name=name,
                gross_salary_cents=gross_salary_cents,
                uif_exempt=uif_exempt,
                tax_number="0123456789",
                status="active",
            )
            db.add(employee)
            db.flush()
            for values in adjustments:
                db.add(Adjustment(employee_id=employee.employee_id, **values))
            db.commit()
            return employee

    def adjustment(self, employee_id: str, **values) -> None:
        with SessionLocal() as db:
            db.add(Adjustment(employee_id=employee_id, **values))
            db.commit()

    def recipient(self, business_id: str, name: str = "Office Supplies Ltd") -> Recipient:
        with SessionLocal() as db:
            recipient = Recipient(business_id=business_id, name=name, account_reference="ACC-001", status="active")
            db.add(recipient)
            db.commit()
            return recipient

    def payroll_schedule(
        self,
        business_id: str,
        employees,
        frequency: str = "0 9 25 * *",
        schedule_type: str = RECURRING,
        next_run_at: datetime | None = None,
    ) -> str:
        now = self.clock.now()
        with SessionLocal() as db:
            schedule = PayrollSchedule(
                business_id=business_id,
                name="Monthly payroll",
                frequency=frequency,
                schedule_type=schedule_type,
                status=SCHEDULE_ACTIVE,
                next_run_at=next_run_at or now,
                created_at=now,
                updated_at=now,
            )
            schedule.employees = [db.get(Employee, e.employee_id) for e in employees]
            db.add(schedule)
            db.commit()
            return schedule.schedule_id

    def payment_schedule(
        self,
        business_id: str,
        recipients,
        amount_cents: int = 50_000,
        frequency: str = "0 8 * * 1",
        schedule_type: str = RECURRING,
        next_run_at: datetime | None = None,
    ) -> str:
        now = self.clock.now()
        with SessionLocal() as db:
            schedule = PaymentSchedule(
                business_id=business_id,
                name="Weekly supplier run",
                frequency=frequency,
                schedule_type=schedule_type,
                status=SCHEDULE_ACTIVE,
                amount_cents=amount_cents,
                currency="ZAR",
                next_run_at=next_run_at or now,
                created_at=now,
                updated_at=now,
            )
            schedule.recipients = [db.get(Recipient, r.recipient_id) for r in recipients]
            db.add(schedule)
            db.commit()
            return schedule.schedule_id

    def payroll_job(self, business_id: str, employee: Employee | None = None, period=FEBRUARY, calculation=None):
        employee = employee or self.employee(business_id)
        start, end = period
        with SessionLocal() as db:
            adjustments = db.execute(
                select(Adjustment).where(Adjustment.employee_id == employee.employee_id)
            ).scalars().all()
            calculation = calculation or self.services.calculator.calculate(employee, adjustments, start, end)
            job = self.services.jobs.create_payroll_job(db, business_id, "ZAR", employee, calculation, start, end)
            db.commit()
            return job

    def raw_payroll_job(self, business_id: str, employee: Employee | None = None, period=FEBRUARY, **overrides):
        """Insert a payroll job row directly, bypassing creation checks."""

        employee = employee or self.employee(business_id)
        start, end = period
        calculation = self.services.calculator.calculate(employee, [], start, end)
        now = self.clock.now()
        values = dict(
            business_id=business_id,
            employee_id=employee.employee_id,
            gross_salary_cents=calculation.gross_salary_cents,
            paye_cents=calculation.paye_cents,
            uif_cents=calculation.uif_cents,
            sdl_cents=calculation.sdl_cents,
            adjustments=calculation.adjustments,
            net_salary_cents=calculation.net_salary_cents,
            currency="ZAR",
            pay_period_start=start,
            pay_period_end=end,
            calculation_hash=calculation.calculation_hash,
            calculation_version=calculation.calculation_version,
            calculation_snapshot=calculation.snapshot,
            adjustment_inputs=calculation.adjustment_inputs,
            employee_snapshot=calculation.employee_snapshot,
            status="pending",
            version=1,
            created_at=now,
            updated_at=now,
        )
        values.update(overrides)
        with SessionLocal() as db:
            job = PayrollJob(**values)
            db.add(job)
            db.commit()
            return job

    def payment_job(self, business_id: str, amount_cents: int = 50_000):
        recipient = self.recipient(business_id)
        now = self.clock.now()
        with SessionLocal() as db:
            schedule = PaymentSchedule(
                business_id=business_id,
                name="Ad-hoc payment",
                frequency="0 8 * * 1",
                status=SCHEDULE_ACTIVE,
                amount_cents=amount_cents,
                currency="ZAR",
                created_at=now,
                updated_at=now,
            )
            db.add(schedule)
            db.flush()
            job = self.services.jobs.create_payment_job(db, schedule, recipient)
            db.commit()
            return job


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def settings():
    return CommonSettings(
        lock_driver="database",
        lock_wait_seconds=0.0,
        otel_exporter_otlp_endpoint="",
        settlement_window_type="hourly",
    )


@pytest.fixture
def services(settings, clock):
    return build_services(SessionLocal, settings, clock)


@pytest.fixture
def factory(services, clock):
    return Factory(services, clock)


@pytest.fixture
def gateway():
    return FakeGateway()

