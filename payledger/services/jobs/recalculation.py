"""Operator-driven payroll job recalculation.

Calculation fields are immutable, so a recalculation never edits a job: it
creates a replacement job from current employee and adjustment data and
dead-letters the original with a `superseded_by:<id>` reason.
"""

from dataclasses import asdict, dataclass

from sqlalchemy import select

from payledger.common.errors import InvalidEntry, InvalidTransition
from payledger.common.logging import bind_log_context, logger
from payledger.common.state_machine import FAILED, PENDING
from payledger.services.escrow.models import Business
from payledger.services.jobs.models import PayrollJob
from payledger.services.schedules.models import Adjustment, Employee


@dataclass
class RecalculationResult:
    job_id: str
    status: str
    new_job_id: str | None = None
    old_net_salary_cents: int | None = None
    new_net_salary_cents: int | None = None
    old_calculation_hash: str | None = None
    new_calculation_hash: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class PayrollRecalculator:
    def __init__(self, session_factory, settings, clock, jobs, settlement, locks, calculator, audit) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.jobs = jobs
        self.settlement = settlement
        self.locks = locks
        self.calculator = calculator
        self.audit = audit

    def recalculate_job(self, job_id: str, force: bool = False, actor: str = "system") -> RecalculationResult:
        key = f"payroll_job_recalculate:{job_id}"
        owner = self.locks.acquire(key, wait_seconds=0)
        if owner is None:
            return RecalculationResult(job_id=job_id, status="in_progress")
        try:
            window_id = self.settlement.current_window_id()
            with bind_log_context(job_id=job_id):
                return self._recalculate(job_id, force, actor, window_id)
        finally:
            self.locks.release(key, owner)

    def _recalculate(self, job_id: str, force: bool, actor: str, window_id: int) -> RecalculationResult:
        with self.session_factory() as db:
            job = self.jobs.get_job(db, "payroll", job_id)
            if job.status not in (PENDING, FAILED):
                raise InvalidTransition(f"cannot recalculate a {job.status} job", job_id=job_id)
            if job.is_dead_lettered:
                raise InvalidTransition("job is dead-lettered", job_id=job_id, failed_reason=job.failed_reason)
            employee = db.get(Employee, job.employee_id)
            if employee is None:
                raise InvalidEntry(f"employee {job.employee_id} not found", job_id=job_id)
            adjustments = db.execute(select(Adjustment).where(Adjustment.employee_id == employee.employee_id)).scalars().all()
            calculation = self.calculator.calculate(employee, adjustments, job.pay_period_start, job.pay_period_end)

            result = RecalculationResult(
                job_id=job_id,
                status="unchanged",
                old_net_salary_cents=job.net_salary_cents,
                new_net_salary_cents=calculation.net_salary_cents,
                old_calculation_hash=job.calculation_hash,
                new_calculation_hash=calculation.calculation_hash,
            )
            if calculation.calculation_hash == job.calculation_hash and not force:
                logger.info("payroll_recalculation_unchanged job_id=%s", job_id)
                return result
            if calculation.has_negative_net:
                raise InvalidEntry(
                    "recalculated net salary is negative", job_id=job_id, net_salary_cents=calculation.net_salary_cents
                )

            business = db.get(Business, job.business_id)
            replacement = self.jobs.create_payroll_job(
                db,
                business_id=job.business_id,
                currency=business.currency if business else job.currency,
                employee=employee,
                calculation=calculation,
                period_start=job.pay_period_start,
                period_end=job.pay_period_end,
                schedule_id=job.payroll_schedule_id,
                schedule_run_id=job.schedule_run_id,
            )
            if job.status == PENDING:
                self.jobs.update_status(db, job, FAILED, error_message=f"superseded by recalculation ({replacement.id})")
            self.jobs.mark_permanently_failed(db, job, reason=f"superseded_by:{replacement.id}")
            self.settlement.assign_job(db, replacement, window_id)
            self.audit.record(
                db,
                "payroll_job.recalculated",
                "payroll_job",
                job_id,
                business_id=job.business_id,
                actor=actor,
                details={
                    "new_job_id": replacement.id,
                    "forced": force,
                    "old_net_salary_cents": job.net_salary_cents,
                    "new_net_salary_cents": calculation.net_salary_cents,
                    "old_calculation_hash": job.calculation_hash,
                    "new_calculation_hash": calculation.calculation_hash,
                },
            )
            db.commit()

        logger.info(
            "payroll_job_recalculated job_id=%s new_job_id=%s old_net=%s new_net=%s",
            job_id,
            replacement.id,
            result.old_net_salary_cents,
            result.new_net_salary_cents,
        )
        result.status = "recalculated"
        result.new_job_id = replacement.id
        return result
