"""Schedule engine: resolves due schedules into jobs.

Jobs are materialized only when a schedule fires, never when it is created, so
fan-out always uses current recipients, employees and adjustments. A schedule
occurrence is claimed with a conditional update on its `next_run_at`, which
keeps two workers from running the same occurrence even without the lock.
"""

import calendar
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from uuid import uuid4

from croniter import croniter
from sqlalchemy import select, update

from payledger.common.clock import as_utc
from payledger.common.errors import LedgerCoreError
from payledger.common.logging import bind_log_context, logger
from payledger.common.metrics import schedule_jobs_materialized_total
from payledger.services.escrow.models import Business
from payledger.services.outbox.service import enqueue_event
from payledger.services.schedules.models import (
    ONE_TIME,
    SCHEDULE_ACTIVE,
    SCHEDULE_CANCELLED,
    Adjustment,
    PaymentSchedule,
    PayrollSchedule,
)


SCHEDULE_MODELS = {"payment": PaymentSchedule, "payroll": PayrollSchedule}


@dataclass
class ScheduleRunResult:
    processed: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    jobs_created: int = 0
    details: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def month_bounds(day: date) -> tuple[date, date]:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def previous_month_bounds(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    if first.month == 1:
        return month_bounds(first.replace(year=first.year - 1, month=12))
    return month_bounds(first.replace(month=first.month - 1))


def monthly_pay_day(frequency: str) -> int | None:
    """Day of month for a monthly cron expression, otherwise None."""

    if frequency.strip() == "@monthly":
        return 1
    parts = frequency.split()
    if len(parts) != 5:
        return None
    day_of_month, month = parts[2], parts[3]
    if day_of_month == "*" or month != "*":
        return None
    return int(day_of_month) if day_of_month.isdigit() else 0


def calculate_pay_period(schedule, execution_date) -> tuple[date, date]:
    """Pay period a schedule pays for when it runs at `execution_date`.

    Monthly recurring schedules that pay on day 1 pay for the current month in
    advance; monthly schedules paying on any other day pay for the month just
    completed. One-time schedules pay for the month they execute in, and every
    other cadence pays for the current month.
    """

    day = execution_date.date() if isinstance(execution_date, datetime) else execution_date
    if schedule.schedule_type == ONE_TIME:
        return month_bounds(day)
    pay_day = monthly_pay_day(schedule.frequency)
    if pay_day is None:
        return month_bounds(day)
    if pay_day == 1:
        return month_bounds(day)
    return previous_month_bounds(day)


class ScheduleEngine:
    """Finds due schedules, claims them and fans out their jobs."""

    def __init__(self, session_factory, settings, clock, jobs, settlement, locks, calculator) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.jobs = jobs
        self.settlement = settlement
        self.locks = locks
        self.calculator = calculator

    calculate_pay_period = staticmethod(calculate_pay_period)

    @staticmethod
    def next_occurrence(frequency: str, after: datetime) -> datetime:
        """Next cron occurrence strictly after `after`."""

        return as_utc(croniter(frequency, as_utc(after)).get_next(datetime))

    def due_schedules(self, job_type: str | None = None) -> list:
        """Active schedules whose `next_run_at` has passed, oldest first."""

        now = self.clock.now()
        models = [SCHEDULE_MODELS[job_type]] if job_type else [PayrollSchedule, PaymentSchedule]
        due = []
        with self.session_factory() as db:
            for model in models:
                due.extend(
                    db.execute(
                        select(model)
                        .where(model.status == SCHEDULE_ACTIVE, model.next_run_at.is_not(None), model.next_run_at <= now)
                        .order_by(model.next_run_at, model.schedule_id)
                    ).scalars()
                )
        return sorted(due, key=lambda s: as_utc(s.next_run_at))

    def run_due_schedules(self, job_type: str | None = None) -> ScheduleRunResult:
        result = ScheduleRunResult()
        for schedule in self.due_schedules(job_type):
            result.processed += 1
            try:
                outcome = self.process_schedule(schedule.job_type, schedule.schedule_id)
            except LedgerCoreError as exc:
                logger.error("schedule_failed schedule=%s:%s error=%s", schedule.job_type, schedule.schedule_id, exc)
                result.failed += 1
                result.details.append(
                    {"schedule_id": schedule.schedule_id, "job_type": schedule.job_type, "status": "failed", "error": str(exc)}
                )
                continue
            if outcome["status"] == "executed":
                result.executed += 1
                result.jobs_created += outcome["jobs_created"]
            else:
                result.skipped += 1
            result.details.append(outcome)
        logger.info(
            "schedules_run processed=%s executed=%s skipped=%s failed=%s jobs_created=%s",
            result.processed,
            result.executed,
            result.skipped,
            result.failed,
            result.jobs_created,
        )
        return result

    def process_schedule(self, job_type: str, schedule_id: str) -> dict:
        """Run one due occurrence of a schedule under its lock."""

        key = f"schedule:{job_type}:{schedule_id}"
        outcome = {"schedule_id": schedule_id, "job_type": job_type}
        owner = self.locks.acquire(key, ttl_seconds=self.settings.schedule_lock_ttl_seconds, wait_seconds=0)
        if owner is None:
            return {**outcome, "status": "skipped", "reason": "already_in_progress"}
        try:
            window_id = self.settlement.current_window_id()
            with bind_log_context(correlation_id=schedule_id):
                return {**outcome, **self._execute(SCHEDULE_MODELS[job_type], schedule_id, window_id)}
        finally:
            self.locks.release(key, owner)

    def _skip(self, schedule, reason: str) -> dict:
        logger.info("schedule_skipped schedule=%s:%s reason=%s", schedule.job_type, schedule.schedule_id, reason)
        return {"status": "skipped", "reason": reason, "jobs_created": 0}

    def _execute(self, model, schedule_id: str, window_id: int) -> dict:
        now = self.clock.now()
        with self.session_factory() as db:
            schedule = db.get(model, schedule_id)
            if schedule is None or schedule.status != SCHEDULE_ACTIVE or schedule.next_run_at is None:
                return {"status": "skipped", "reason": "not_active", "jobs_created": 0}
            due_at = as_utc(schedule.next_run_at)
            if due_at > now:
                return self._skip(schedule, "not_due")
            business = db.get(Business, schedule.business_id)
            if business is None or business.status != "active":
                return self._skip(schedule, "business_inactive")
            if business.is_frozen:
                return self._skip(schedule, "business_frozen")
            participants = schedule.participants()
            if not participants:
                return self._skip(schedule, "no_participants")
            if business.escrow_balance_cents <= 0:
                return self._skip(schedule, "no_escrow_balance")

            if schedule.schedule_type == ONE_TIME:
                values = {"status": SCHEDULE_CANCELLED, "next_run_at": None, "last_run_at": now, "updated_at": now}
            else:
                values = {
                    # Missed occurrences collapse into this run.
                    "next_run_at": self.next_occurrence(schedule.frequency, now),
                    "last_run_at": now,
                    "updated_at": now,
                }
            claimed = db.execute(
                update(model)
                .where(
                    model.schedule_id == schedule_id,
                    model.status == SCHEDULE_ACTIVE,
                    model.next_run_at == schedule.next_run_at,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.rollback()
                return self._skip(schedule, "claimed_elsewhere")

            run_id = str(uuid4())
            if model is PayrollSchedule:
                created, skipped = self._materialize_payroll(db, schedule, business, participants, due_at, run_id)
            else:
                created, skipped = self._materialize_payments(db, schedule, participants, run_id)
            for job in created:
                self.settlement.assign_job(db, job, window_id)
            enqueue_event(
                db,
                self.clock,
                "schedules.executed",
                aggregate_type=f"{schedule.job_type}_schedule",
                aggregate_id=schedule_id,
                business_id=schedule.business_id,
                payload={"schedule_run_id": run_id, "jobs_created": len(created), "skipped": skipped},
            )
            db.commit()

        schedule_jobs_materialized_total.labels(job_type=model.job_type).inc(len(created))
        logger.info(
            "schedule_executed schedule=%s:%s run_id=%s jobs_created=%s participants_skipped=%s next_run_at=%s",
            model.job_type,
            schedule_id,
            run_id,
            len(created),
            len(skipped),
            values["next_run_at"],
        )
        return {
            "status": "executed",
            "schedule_run_id": run_id,
            "jobs_created": len(created),
            "participants_skipped": skipped,
            "next_run_at": values["next_run_at"].isoformat() if values["next_run_at"] else None,
        }

    def _materialize_payments(self, db, schedule, recipients, run_id: str):
        created = [self.jobs.create_payment_job(db, schedule, recipient, schedule_run_id=run_id) for recipient in recipients]
        return created, []

    def _materialize_payroll(self, db, schedule, business, employees, due_at: datetime, run_id: str):
        period_start, period_end = calculate_pay_period(schedule, due_at)
        created = []
        skipped = []
        for employee in employees:
            if self.jobs.find_active_payroll_duplicate(db, employee.employee_id, period_start, period_end):
                skipped.append({"employee_id": employee.employee_id, "reason": "duplicate_period"})
                continue
            adjustments = db.execute(
                select(Adjustment).where(Adjustment.employee_id == employee.employee_id)
            ).scalars().all()
            calculation = self.calculator.calculate(employee, adjustments, period_start, period_end)
            if calculation.has_negative_net:
                logger.warning(
                    "payroll_negative_net employee_id=%s net=%s", employee.employee_id, calculation.net_salary_cents
                )
                skipped.append({"employee_id": employee.employee_id, "reason": "negative_net_salary"})
                continue
            created.append(
                self.jobs.create_payroll_job(
                    db,
                    business_id=schedule.business_id,
                    currency=business.currency,
                    employee=employee,
                    calculation=calculation,
                    period_start=period_start,
                    period_end=period_end,
                    schedule_id=schedule.schedule_id,
                    schedule_run_id=run_id,
                )
            )
        return created, skipped
