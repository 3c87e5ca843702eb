"""Job state machine for payment and payroll jobs.

Every write is a narrow command (`update_status`, `record_dispatch`, `retry`, `reset_stuck`,
`mark_permanently_failed`, `update_operational_fields`, `correct_negative_net`)
that validates its own invariant and then issues one conditional UPDATE guarded
by `(id, version)`. Zero rows matched means another writer got there first and
`OptimisticLockConflict` is raised; callers re-read and retry, they never
overwrite. Commands run in the caller's session; callers commit, and an
exception leaves nothing behind once the session rolls back.
"""

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from payledger.common.errors import ImmutableFieldViolation, InvalidEntry, InvalidTransition, OptimisticLockConflict
from payledger.common.logging import logger
from payledger.common.metrics import job_transitions_total, optimistic_lock_conflicts_total
from payledger.common.state_machine import (
    FAILED,
    PENDING,
    PROCESSING,
    SUCCEEDED,
    TERMINAL_STATUSES,
    is_valid_transition,
    validate_transition,
)
from payledger.services.jobs.calculator import PayrollCalculation, calculation_hash
from payledger.services.jobs.models import MUTABLE_FIELDS, JOB_MODELS, JobTimeline, PaymentJob, PayrollJob
from payledger.services.jobs.snapshots import PaymentCalculationSnapshotV1, RecipientSnapshotV1, schema_version
from payledger.services.outbox.service import enqueue_event


OPERATOR_FIELDS = {
    "error_message",
    "escrow_deposit_id",
    "settlement_window_id",
    "fee_released_manually_at",
    "funds_returned_manually_at",
    "released_by",
}
ACTIVE_STATUSES = (PENDING, PROCESSING, SUCCEEDED)


class JobStateMachine:
    """Owns job creation and every lifecycle write."""

    is_valid_transition = staticmethod(is_valid_transition)

    def __init__(self, session_factory, settings, clock, escrow) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.escrow = escrow

    def get_job(self, db, job_type: str, job_id: str):
        job = db.get(JOB_MODELS[job_type], job_id)
        if job is None:
            raise InvalidEntry(f"{job_type} job {job_id} not found", job_id=job_id)
        return job

    def _write(self, db, job, values: dict, expected_version: int, reason: str, from_status: str | None = None):
        """Apply `values` iff the row still carries `expected_version`."""

        model = type(job)
        now = self.clock.now()
        new_version = expected_version + 1
        result = db.execute(
            update(model)
            .where(model.id == job.id, model.version == expected_version)
            .values(version=new_version, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            optimistic_lock_conflicts_total.inc()
            raise OptimisticLockConflict(
                f"optimistic concurrency conflict for {job.job_ref} (expected version {expected_version})",
                job_id=job.id,
                job_type=job.job_type,
                expected_version=expected_version,
            )
        for key, value in {**values, "version": new_version, "updated_at": now}.items():
            set_committed_value(job, key, value)
        db.add(
            JobTimeline(
                job_type=job.job_type,
                job_id=job.id,
                from_status=from_status,
                to_status=job.status,
                reason=reason,
                version=new_version,
                created_at=now,
            )
        )
        return job

    def update_status(
        self,
        db,
        job,
        new_status: str,
        error_message: str | None = None,
        expected_version: int | None = None,
        reason: str | None = None,
        clear_dispatch_key: bool = False,
    ):
        """Validate and apply one status transition with its fund effects.

        pending -> processing reserves escrow funds, processing -> succeeded posts
        the reservation, processing -> failed reverses it. Re-applying the current
        status is a no-op. The dispatch key survives unless `clear_dispatch_key`
        is set, which callers do only once the gateway has given a definite answer.
        """

        current = job.status
        if new_status == current:
            return job
        validate_transition(current, new_status)
        if new_status == PENDING and job.permanently_failed_at is not None:
            raise InvalidTransition("dead-lettered jobs cannot be retried automatically", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        if expected != job.version:
            optimistic_lock_conflicts_total.inc()
            raise OptimisticLockConflict(
                f"stale version for {job.job_ref}", job_id=job.id, expected_version=expected, loaded_version=job.version
            )

        values = {"status": new_status}
        if error_message is not None or new_status in (PENDING, SUCCEEDED):
            values["error_message"] = error_message
        if new_status in TERMINAL_STATUSES:
            values["processed_at"] = self.clock.now()

        if current == PENDING and new_status == PROCESSING:
            correlation_id, deposit_id = self.escrow.reserve_funds(db, job)
            values["reservation_correlation_id"] = correlation_id
            values["escrow_deposit_id"] = deposit_id
        elif current == PROCESSING and new_status == SUCCEEDED:
            self.escrow.settle_reservation(db, job)
        elif current == PROCESSING and new_status == FAILED:
            self.escrow.release_reservation(db, job, error_message or "job failed")
            values["reservation_correlation_id"] = None
        if clear_dispatch_key:
            values["dispatch_key"] = None

        self._write(db, job, values, expected, reason or f"{current}->{new_status}", from_status=current)
        job_transitions_total.labels(job_type=job.job_type, from_status=current, to_status=new_status).inc()
        logger.info("job_transition job=%s from=%s to=%s version=%s", job.job_ref, current, new_status, job.version)
        if new_status in TERMINAL_STATUSES:
            self._emit(db, job, f"jobs.{new_status}", {"error_message": job.error_message})
        return job

    def record_dispatch(self, db, job, expected_version: int | None = None) -> str:
        """Key the gateway sees for this job's payout, persisted before the call.

        An existing key is returned as is, so a job reset from processing or retried
        after an unknown outcome is dispatched again under the same key.
        """

        if job.dispatch_key:
            return job.dispatch_key
        if job.status != PROCESSING:
            raise InvalidTransition(f"only processing jobs are dispatched ({job.status})", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        key = f"{job.job_ref}:{uuid4().hex[:12]}"
        self._write(db, job, {"dispatch_key": key}, expected, "dispatch_recorded", from_status=PROCESSING)
        return key

    def retry(self, db, job, expected_version: int | None = None):
        """failed -> pending for another attempt, counting the retry."""

        if job.status != FAILED:
            raise InvalidTransition(f"only failed jobs can be retried ({job.status})", job_id=job.id)
        if job.permanently_failed_at is not None:
            raise InvalidTransition("dead-lettered jobs cannot be retried automatically", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        values = {"status": PENDING, "error_message": None, "processed_at": None, "retry_count": job.retry_count + 1}
        self._write(db, job, values, expected, "retry", from_status=FAILED)
        job_transitions_total.labels(job_type=job.job_type, from_status=FAILED, to_status=PENDING).inc()
        return job

    def reset_stuck(self, db, job, reason: str, expected_version: int | None = None):
        """processing -> pending for recovery only; releases the reservation."""

        if job.status != PROCESSING:
            raise InvalidTransition(f"only processing jobs can be reset ({job.status})", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        self.escrow.release_reservation(db, job, reason)
        values = {
            "status": PENDING,
            "error_message": reason,
            "reservation_correlation_id": None,
            "retry_count": job.retry_count + 1,
        }
        self._write(db, job, values, expected, "recovered_from_stuck", from_status=PROCESSING)
        job_transitions_total.labels(job_type=job.job_type, from_status=PROCESSING, to_status=PENDING).inc()
        return job

    def mark_permanently_failed(self, db, job, reason: str = "max_retries_exceeded", expected_version: int | None = None):
        """Dead-letter a failed job; it is excluded from every automatic recovery pass."""

        if job.permanently_failed_at is not None:
            return job
        if job.status != FAILED:
            raise InvalidTransition(f"only failed jobs can be dead-lettered ({job.status})", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        values = {"permanently_failed_at": self.clock.now(), "failed_reason": reason}
        self._write(db, job, values, expected, f"dead_lettered:{reason}", from_status=FAILED)
        logger.warning("job_dead_lettered job=%s reason=%s retries=%s", job.job_ref, reason, job.retry_count)
        self._emit(db, job, "jobs.dead_lettered", {"reason": reason, "retry_count": job.retry_count})
        return job

    def update_operational_fields(self, db, job, changes: dict, expected_version: int | None = None):
        """Change operator-editable fields; calculation fields are refused outright."""

        immutable = [name for name, value in changes.items() if name in job.immutable_fields and getattr(job, name) != value]
        if immutable:
            raise ImmutableFieldViolation(immutable, job_id=job.id, job_type=job.job_type)
        unchanged_immutable = {name for name in changes if name in job.immutable_fields}
        lifecycle = [name for name in changes if name in MUTABLE_FIELDS and name not in OPERATOR_FIELDS]
        if lifecycle:
            raise InvalidTransition(
                f"lifecycle fields change through dedicated commands: {', '.join(sorted(lifecycle))}", job_id=job.id
            )
        unknown = [name for name in changes if name not in OPERATOR_FIELDS and name not in unchanged_immutable]
        if unknown:
            raise InvalidEntry(f"unknown job fields: {', '.join(sorted(unknown))}", job_id=job.id)
        values = {name: value for name, value in changes.items() if name in OPERATOR_FIELDS}
        if not values:
            return job
        expected = job.version if expected_version is None else expected_version
        return self._write(db, job, values, expected, "operational_update", from_status=job.status)

    def correct_negative_net(self, db, job: PayrollJob, expected_version: int | None = None):
        """Zero a negative net salary on a pending payroll job and force it to failed.

        The single sanctioned write to a calculation field; it only ever moves a
        corrupt negative value to zero and the job can never be paid afterwards.
        """

        if not isinstance(job, PayrollJob):
            raise InvalidEntry("net salary correction applies to payroll jobs", job_id=job.id)
        if job.net_salary_cents >= 0:
            raise InvalidEntry("net salary is not negative", job_id=job.id)
        if job.status != PENDING:
            raise InvalidTransition(f"only pending jobs can be corrected ({job.status})", job_id=job.id)
        expected = job.version if expected_version is None else expected_version
        values = {
            "net_salary_cents": 0,
            "status": FAILED,
            "error_message": "Net salary was negative - corrected to 0",
            "processed_at": self.clock.now(),
        }
        self._write(db, job, values, expected, "negative_net_corrected", from_status=PENDING)
        logger.warning("job_negative_net_corrected job=%s", job.job_ref)
        return job

    def _emit(self, db, job, event_type: str, extra: dict) -> None:
        enqueue_event(
            db,
            self.clock,
            event_type,
            aggregate_type=f"{job.job_type}_job",
            aggregate_id=job.id,
            business_id=job.business_id,
            payload={
                "job_type": job.job_type,
                "status": job.status,
                "payout_cents": job.payout_cents,
                "currency": job.currency,
                "version": job.version,
                **extra,
            },
        )

    def create_payment_job(
        self,
        db,
        schedule,
        recipient,
        schedule_run_id: str | None = None,
    ) -> PaymentJob:
        """Materialize one payment job with its immutable calculation fields."""

        snapshot = PaymentCalculationSnapshotV1(
            amount_cents=schedule.amount_cents, currency=schedule.currency, schedule_id=schedule.schedule_id
        )
        version = schema_version(PaymentCalculationSnapshotV1)
        inputs = {
            "schedule_id": schedule.schedule_id,
            "recipient_id": recipient.recipient_id,
            "amount_cents": schedule.amount_cents,
            "currency": schedule.currency,
            "calculation_version": version,
        }
        now = self.clock.now()
        job = PaymentJob(
            business_id=schedule.business_id,
            payment_schedule_id=schedule.schedule_id,
            recipient_id=recipient.recipient_id,
            amount_cents=schedule.amount_cents,
            currency=schedule.currency,
            calculation_hash=calculation_hash(inputs),
            calculation_version=version,
            calculation_snapshot=snapshot.model_dump(),
            recipient_snapshot=RecipientSnapshotV1(
                recipient_id=recipient.recipient_id,
                name=recipient.name,
                account_reference=recipient.account_reference,
            ).model_dump(),
            schedule_run_id=schedule_run_id,
            status=PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )
        return self._insert(db, job)

    def create_payroll_job(
        self,
        db,
        business_id: str,
        currency: str,
        employee,
        calculation: PayrollCalculation,
        period_start,
        period_end,
        schedule_id: str | None = None,
        schedule_run_id: str | None = None,
    ) -> PayrollJob:
        """Materialize one payroll job from a finished calculation."""

        if calculation.has_negative_net:
            raise InvalidEntry("net salary is negative", employee_id=employee.employee_id)
        now = self.clock.now()
        job = PayrollJob(
            business_id=business_id,
            payroll_schedule_id=schedule_id,
            employee_id=employee.employee_id,
            gross_salary_cents=calculation.gross_salary_cents,
            paye_cents=calculation.paye_cents,
            uif_cents=calculation.uif_cents,
            sdl_cents=calculation.sdl_cents,
            adjustments=calculation.adjustments,
            net_salary_cents=calculation.net_salary_cents,
            currency=currency,
            pay_period_start=period_start,
            pay_period_end=period_end,
            calculation_hash=calculation.calculation_hash,
            calculation_version=calculation.calculation_version,
            calculation_snapshot=calculation.snapshot,
            adjustment_inputs=calculation.adjustment_inputs,
            employee_snapshot=calculation.employee_snapshot,
            schedule_run_id=schedule_run_id,
            status=PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )
        return self._insert(db, job)

    def _insert(self, db, job):
        db.add(job)
        db.flush()
        db.add(
            JobTimeline(
                job_type=job.job_type,
                job_id=job.id,
                from_status=None,
                to_status=PENDING,
                reason="job_created",
                version=job.version,
                created_at=job.created_at,
            )
        )
        logger.info("job_created job=%s business_id=%s payout=%s", job.job_ref, job.business_id, job.payout_cents)
        return job

    def find_active_payroll_duplicate(self, db, employee_id: str, period_start, period_end) -> PayrollJob | None:
        """Existing live job for the same employee and pay period, if any."""

        return db.execute(
            select(PayrollJob)
            .where(
                PayrollJob.employee_id == employee_id,
                PayrollJob.pay_period_start == period_start,
                PayrollJob.pay_period_end == period_end,
                PayrollJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(PayrollJob.created_at, PayrollJob.id)
            .limit(1)
        ).scalar_one_or_none()
