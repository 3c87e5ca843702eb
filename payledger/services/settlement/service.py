"""Settlement windows: time-boxed batches of jobs executed together.

`process_window` is a resumable batch driver. Job status is the resumption
marker: a re-run only advances jobs still `pending` or `processing`, so jobs
that already succeeded are never dispatched twice. Each run also stamps a fresh
`run_token` and bumps `attempts` on the window row for operator visibility.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from payledger.common.clock import as_utc
from payledger.common.errors import DiscrepancyDetected, InsufficientFunds, InvalidEntry, OptimisticLockConflict
from payledger.common.logging import bind_log_context, logger
from payledger.common.metrics import settlement_window_seconds
from payledger.common.state_machine import FAILED, PENDING, PROCESSING, SUCCEEDED
from payledger.common.tracing import tracer
from payledger.services.jobs.models import PaymentJob, PayrollJob
from payledger.services.settlement.gateway import JobDispatch
from payledger.services.settlement.models import (
    WINDOW_PENDING,
    WINDOW_PROCESSED,
    WINDOW_PROCESSING,
    SettlementWindow,
)


WINDOW_JOB_MODELS = (PayrollJob, PaymentJob)
OUTSTANDING = (PENDING, PROCESSING)


def window_bounds(window_type: str, at: datetime) -> tuple[datetime, datetime]:
    """Start and end of the window of `window_type` that contains `at`."""

    at = as_utc(at)
    if window_type == "hourly":
        start = at.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    if window_type == "daily":
        start = at.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    if window_type == "custom":
        start = at.replace(hour=(at.hour // 4) * 4, minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=4)
    raise InvalidEntry(f"unknown settlement window type {window_type}", window_type=window_type)


@dataclass
class WindowResult:
    window_id: int
    status: str
    run_token: str | None = None
    attempts: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    already_processed: bool = False
    transaction_count: int = 0
    total_amount_cents: int = 0
    by_type: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class SettlementService:
    """Window creation, job assignment and batch execution."""

    def __init__(self, session_factory, settings, clock, jobs, locks) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.jobs = jobs
        self.locks = locks

    def _find_window(self, db, window_type: str, start: datetime) -> SettlementWindow | None:
        return db.execute(
            select(SettlementWindow).where(
                SettlementWindow.window_type == window_type, SettlementWindow.window_start == start
            )
        ).scalar_one_or_none()

    def current_window_id(self, window_type: str | None = None) -> int:
        """Get or create the window covering now; safe under concurrent creators."""

        window_type = window_type or self.settings.settlement_window_type
        start, end = window_bounds(window_type, self.clock.now())
        with self.session_factory() as db:
            window = self._find_window(db, window_type, start)
            if window is not None:
                return window.id
            window = SettlementWindow(
                window_type=window_type,
                window_start=start,
                window_end=end,
                status=WINDOW_PENDING,
                currency=self.settings.default_currency,
                created_at=self.clock.now(),
            )
            db.add(window)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._find_window(db, window_type, start).id
            logger.info("settlement_window_created window_id=%s type=%s start=%s", window.id, window_type, start)
            return window.id

    def assign_job(self, db, job, window_id: int):
        """Link a job to a window and grow the window's running totals."""

        if job.settlement_window_id == window_id:
            return job
        self.jobs.update_operational_fields(db, job, {"settlement_window_id": window_id})
        db.execute(
            update(SettlementWindow)
            .where(SettlementWindow.id == window_id)
            .values(
                transaction_count=SettlementWindow.transaction_count + 1,
                total_amount_cents=SettlementWindow.total_amount_cents + job.payout_cents,
            )
            .execution_options(synchronize_session=False)
        )
        return job

    def _job_ids(self, db, model, window_id: int, statuses) -> list[str]:
        return list(
            db.execute(
                select(model.id)
                .where(model.settlement_window_id == window_id, model.status.in_(statuses))
                .order_by(model.created_at, model.id)
            ).scalars()
        )

    def _settled_totals(self, db, window_id: int) -> tuple[int, int]:
        count = total = 0
        for model in WINDOW_JOB_MODELS:
            payout = PayrollJob.net_salary_cents if model is PayrollJob else PaymentJob.amount_cents
            row = db.execute(
                select(func.count(model.id), func.coalesce(func.sum(payout), 0)).where(
                    model.settlement_window_id == window_id, model.status == SUCCEEDED
                )
            ).one()
            count += int(row[0])
            total += int(row[1])
        return count, total

    def process_window(self, window_id: int, gateway) -> WindowResult:
        """Execute every outstanding job of a window under the window lock."""

        key = f"settlement_window:{window_id}"
        owner = self.locks.acquire(key, wait_seconds=0)
        if owner is None:
            return WindowResult(window_id=window_id, status="in_progress")
        try:
            with bind_log_context(correlation_id=key), settlement_window_seconds.time():
                with tracer.start_as_current_span("settlement.process_window") as span:
                    span.set_attribute("settlement.window_id", window_id)
                    result = self._process(window_id, gateway)
                    span.set_attribute("settlement.succeeded", result.succeeded)
                    span.set_attribute("settlement.failed", result.failed)
                    return result
        finally:
            self.locks.release(key, owner)

    def _process(self, window_id: int, gateway) -> WindowResult:
        with self.session_factory() as db:
            window = db.get(SettlementWindow, window_id)
            if window is None:
                raise InvalidEntry(f"settlement window {window_id} not found", window_id=window_id)
            outstanding = {model: self._job_ids(db, model, window_id, OUTSTANDING) for model in WINDOW_JOB_MODELS}
            if window.status == WINDOW_PROCESSED and not any(outstanding.values()):
                logger.info("settlement_window_already_processed window_id=%s", window_id)
                return WindowResult(
                    window_id=window_id,
                    status=window.status,
                    run_token=window.run_token,
                    attempts=window.attempts,
                    already_processed=True,
                    transaction_count=window.transaction_count,
                    total_amount_cents=window.total_amount_cents,
                )
            run_token = str(uuid4())
            window.run_token = run_token
            window.attempts += 1
            window.status = WINDOW_PROCESSING
            window.started_at = self.clock.now()
            attempts = window.attempts
            db.commit()

        result = WindowResult(window_id=window_id, status=WINDOW_PROCESSING, run_token=run_token, attempts=attempts)
        for model, job_ids in outstanding.items():
            counts = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}
            for job_id in job_ids:
                outcome = self._settle_job(model, job_id, window_id, gateway)
                counts[outcome] += 1
                if outcome != "skipped":
                    counts["processed"] += 1
            result.by_type[model.job_type] = counts
            result.processed += counts["processed"]
            result.succeeded += counts["succeeded"]
            result.failed += counts["failed"]
            result.skipped += counts["skipped"]

        with self.session_factory() as db:
            remaining = sum(len(self._job_ids(db, model, window_id, OUTSTANDING)) for model in WINDOW_JOB_MODELS)
            count, total = self._settled_totals(db, window_id)
            window = db.get(SettlementWindow, window_id)
            window.transaction_count = count
            window.total_amount_cents = total
            if remaining == 0:
                window.status = WINDOW_PROCESSED
                window.processed_at = self.clock.now()
            db.commit()
            result.status = window.status
            result.transaction_count = count
            result.total_amount_cents = total

        logger.info(
            "settlement_window_processed window_id=%s run_token=%s attempts=%s succeeded=%s failed=%s skipped=%s status=%s",
            window_id,
            run_token,
            attempts,
            result.succeeded,
            result.failed,
            result.skipped,
            result.status,
        )
        return result

    def _settle_job(self, model, job_id: str, window_id: int, gateway) -> str:
        """Advance one job: reserve, dispatch, then record the gateway outcome."""

        with self.session_factory() as db, bind_log_context(job_id=job_id):
            job = db.get(model, job_id)
            if job is None or job.status not in OUTSTANDING or job.is_dead_lettered:
                return "skipped"
            try:
                if job.status == PENDING:
                    try:
                        self.jobs.update_status(db, job, PROCESSING, reason=f"settlement_window:{window_id}")
                    except InsufficientFunds as exc:
                        db.rollback()
                        self.jobs.update_status(db, job, FAILED, error_message=str(exc))
                        db.commit()
                        return "failed"
                    db.commit()
                idempotency_key = self.jobs.record_dispatch(db, job)
                db.commit()

                dispatch = JobDispatch(
                    job_type=job.job_type,
                    job_id=job.id,
                    business_id=job.business_id,
                    amount_cents=job.payout_cents,
                    currency=job.currency,
                    idempotency_key=idempotency_key,
                    beneficiary=job.recipient_snapshot if model is PaymentJob else job.employee_snapshot,
                )
                outcome = gateway.execute(dispatch)
                if outcome.succeeded:
                    self.jobs.update_status(db, job, SUCCEEDED, reason=f"gateway:{outcome.reference or 'ok'}")
                    db.commit()
                    return "succeeded"
                self.jobs.update_status(
                    db,
                    job,
                    FAILED,
                    error_message=outcome.error or "payout failed",
                    clear_dispatch_key=outcome.outcome_known,
                )
                db.commit()
                return "failed"
            except OptimisticLockConflict:
                db.rollback()
                logger.warning("settlement_job_conflict job=%s:%s window_id=%s", model.job_type, job_id, window_id)
                return "skipped"
            except DiscrepancyDetected:
                db.rollback()
                logger.warning("settlement_job_held job=%s:%s reason=business_frozen", model.job_type, job_id)
                return "skipped"

    def process_due_windows(self, gateway) -> list[WindowResult]:
        """Process every window that has ended and is not yet processed."""

        now = self.clock.now()
        with self.session_factory() as db:
            window_ids = list(
                db.execute(
                    select(SettlementWindow.id)
                    .where(SettlementWindow.status != WINDOW_PROCESSED, SettlementWindow.window_end <= now)
                    .order_by(SettlementWindow.window_start)
                ).scalars()
            )
        return [self.process_window(window_id, gateway) for window_id in window_ids]
