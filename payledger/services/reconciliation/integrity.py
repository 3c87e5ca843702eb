"""Payroll integrity pass over live payroll jobs.

Checks each job's stored calculation against its own arithmetic and against a
recomputation from current employee and adjustment data. Only pending jobs are
ever corrected; anything already paid is reported for an operator.
"""

from collections import defaultdict
from dataclasses import asdict, dataclass, field

from pydantic import ValidationError
from sqlalchemy import select

from payledger.common.errors import InvalidTransition, OptimisticLockConflict
from payledger.common.logging import logger
from payledger.common.state_machine import FAILED, PENDING, PROCESSING, SUCCEEDED
from payledger.services.jobs.models import PayrollJob
from payledger.services.jobs.snapshots import decode_job_snapshot
from payledger.services.schedules.models import Adjustment, Employee


CHECKED_STATUSES = (PENDING, PROCESSING, SUCCEEDED)


@dataclass
class IntegrityReport:
    jobs_checked: int = 0
    issues: int = 0
    fixed: int = 0
    issues_by_type: dict[str, int] = field(default_factory=dict)
    details: list[dict] = field(default_factory=list)

    @property
    def unresolved(self) -> int:
        return self.issues - self.fixed

    def add(self, job: PayrollJob, issue: str, message: str) -> None:
        self.issues += 1
        self.issues_by_type[issue] = self.issues_by_type.get(issue, 0) + 1
        self.details.append({"job_id": job.id, "status": job.status, "issue": issue, "message": message})

    def to_dict(self) -> dict:
        return {**asdict(self), "unresolved": self.unresolved}


class PayrollIntegrityChecker:
    def __init__(self, session_factory, settings, clock, jobs, calculator) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.jobs = jobs
        self.calculator = calculator

    def run(self, business_id: str | None = None, fix: bool = False) -> IntegrityReport:
        report = IntegrityReport()
        negative = []
        with self.session_factory() as db:
            query = (
                select(PayrollJob)
                .where(PayrollJob.status.in_(CHECKED_STATUSES))
                .order_by(PayrollJob.created_at.desc(), PayrollJob.id)
                .limit(self.settings.integrity_batch_limit)
            )
            if business_id:
                query = query.where(PayrollJob.business_id == business_id)
            jobs = db.execute(query).scalars().all()
            for job in jobs:
                report.jobs_checked += 1
                self._check_job(db, job, report)
                if job.net_salary_cents < 0:
                    report.add(job, "negative_net_salary", f"net salary {job.net_salary_cents} is negative")
                    negative.append(job)
            duplicates = self._duplicates(jobs, report)

        if fix:
            for job in negative:
                if job.status == PENDING and self._apply(job, self._correct_negative):
                    report.fixed += 1
            for job, kept_id in duplicates:
                if job.status == PENDING and job.net_salary_cents >= 0:
                    if self._apply(job, lambda db, fresh: self._fail_duplicate(db, fresh, kept_id)):
                        report.fixed += 1

        logger.info(
            "payroll_integrity_checked jobs=%s issues=%s fixed=%s by_type=%s",
            report.jobs_checked,
            report.issues,
            report.fixed,
            report.issues_by_type,
        )
        return report

    def _check_job(self, db, job: PayrollJob, report: IntegrityReport) -> None:
        if not job.calculation_hash:
            report.add(job, "missing_calculation_hash", "calculation hash is empty")
        try:
            snapshot = decode_job_snapshot(job)
        except (ValueError, ValidationError) as exc:
            report.add(job, "undecodable_snapshot", str(exc))
            return

        stored_formula = (
            job.gross_salary_cents
            - job.paye_cents
            - job.uif_cents
            + snapshot.total_additions_cents
            - snapshot.total_deductions_cents
        )
        if stored_formula != job.net_salary_cents and job.net_salary_cents >= 0:
            report.add(
                job,
                "net_formula_mismatch",
                f"stored net {job.net_salary_cents} does not match components ({stored_formula})",
            )
        if job.gross_salary_cents != snapshot.gross_salary_cents:
            report.add(job, "snapshot_mismatch", "gross salary differs from calculation snapshot")

        if job.calculation_version != self.calculator.calculation_version:
            report.add(
                job,
                "calculation_version_mismatch",
                f"job uses v{job.calculation_version}, calculator is v{self.calculator.calculation_version}",
            )
            return
        employee = db.get(Employee, job.employee_id)
        if employee is None:
            report.add(job, "employee_missing", f"employee {job.employee_id} no longer exists")
            return
        adjustments = db.execute(select(Adjustment).where(Adjustment.employee_id == job.employee_id)).scalars().all()
        current = self.calculator.calculate(employee, adjustments, job.pay_period_start, job.pay_period_end)
        if current.calculation_hash != job.calculation_hash:
            report.add(
                job,
                "calculation_drift",
                f"recomputed net {current.net_salary_cents} vs stored {job.net_salary_cents}",
            )

    def _duplicates(self, jobs, report: IntegrityReport) -> list[tuple[PayrollJob, str]]:
        groups = defaultdict(list)
        for job in jobs:
            groups[(job.employee_id, job.pay_period_start, job.pay_period_end)].append(job)
        duplicates = []
        for group in groups.values():
            if len(group) < 2:
                continue
            ordered = sorted(group, key=lambda j: (j.created_at, j.id))
            kept = ordered[0]
            for job in ordered[1:]:
                report.add(job, "duplicate_job", f"duplicate of {kept.id} for the same employee and pay period")
                duplicates.append((job, kept.id))
        return duplicates

    def _apply(self, job: PayrollJob, action) -> bool:
        with self.session_factory() as db:
            fresh = db.get(PayrollJob, job.id)
            if fresh is None or fresh.status != PENDING:
                return False
            try:
                action(db, fresh)
            except (OptimisticLockConflict, InvalidTransition) as exc:
                db.rollback()
                logger.warning("payroll_integrity_fix_skipped job_id=%s error=%s", job.id, exc)
                return False
            db.commit()
            return True

    def _correct_negative(self, db, job: PayrollJob) -> None:
        self.jobs.correct_negative_net(db, job)

    def _fail_duplicate(self, db, job: PayrollJob, kept_id: str) -> None:
        self.jobs.update_status(db, job, FAILED, error_message=f"duplicate payroll job for period (kept {kept_id})")
