"""Stuck and failed job recovery.

Both passes are bounded by `limit` per job type and per invocation. Every job
is handled in its own transaction with a version-checked write, so a worker
that advances a job concurrently simply wins and the job is counted as skipped.
"""

from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy import select

from payledger.common.clock import as_utc
from payledger.common.errors import InvalidTransition, OptimisticLockConflict
from payledger.common.logging import bind_log_context, logger
from payledger.common.metrics import recovery_actions_total
from payledger.common.state_machine import FAILED, PROCESSING
from payledger.services.jobs.models import job_models


NON_RETRYABLE_PREFIXES = (
    "Net salary was negative",
    "duplicate payroll job",
)


@dataclass
class RecoveryResult:
    detected: int = 0
    recovered: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def merge(self, other: "RecoveryResult") -> "RecoveryResult":
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)
        return self

    def to_dict(self) -> dict:
        return asdict(self)


class RecoveryEngine:
    """Resets stuck jobs, retries failed ones and dead-letters exhausted ones."""

    def __init__(self, session_factory, settings, clock, jobs, settlement) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.jobs = jobs
        self.settlement = settlement

    def _candidates(self, model, conditions, limit: int) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(model.id)
                    .where(*conditions)
                    .order_by(model.updated_at, model.id)
                    .limit(limit)
                ).scalars()
            )

    def recover_stuck_jobs(self, job_type: str | None = None, limit: int | None = None) -> RecoveryResult:
        """Reset jobs stuck in `processing` past the timeout, or fail them when out of retries."""

        limit = limit or self.settings.recovery_batch_limit
        cutoff = self.clock.now() - timedelta(minutes=self.settings.stuck_job_timeout_minutes)
        result = RecoveryResult()
        window_id = None
        for model in job_models(job_type):
            job_ids = self._candidates(
                model,
                (model.status == PROCESSING, model.updated_at < cutoff, model.permanently_failed_at.is_(None)),
                limit,
            )
            result.detected += len(job_ids)
            if job_ids and window_id is None:
                window_id = self.settlement.current_window_id()
            for job_id in job_ids:
                action = self._recover_one(model, job_id, cutoff, window_id)
                setattr(result, action, getattr(result, action) + 1)
                recovery_actions_total.labels(job_type=model.job_type, action=f"stuck_{action}").inc()
        logger.info(
            "stuck_jobs_recovered type=%s detected=%s recovered=%s failed=%s skipped=%s",
            job_type or "all",
            result.detected,
            result.recovered,
            result.failed,
            result.skipped,
        )
        return result

    def _recover_one(self, model, job_id: str, cutoff, window_id: int) -> str:
        with self.session_factory() as db, bind_log_context(job_id=job_id):
            job = db.get(model, job_id)
            if job is None or job.status != PROCESSING or as_utc(job.updated_at) >= cutoff:
                return "skipped"
            try:
                if job.retry_count >= self.settings.max_retries:
                    self.jobs.update_status(
                        db,
                        job,
                        FAILED,
                        error_message="stuck in processing; retry budget exhausted",
                        reason="stuck_retry_budget_exhausted",
                    )
                    db.commit()
                    logger.warning("stuck_job_failed job=%s retries=%s", job.job_ref, job.retry_count)
                    return "failed"
                self.jobs.reset_stuck(
                    db, job, f"stuck in processing for over {self.settings.stuck_job_timeout_minutes} minutes"
                )
                self.settlement.assign_job(db, job, window_id)
                db.commit()
            except (OptimisticLockConflict, InvalidTransition) as exc:
                db.rollback()
                logger.warning("stuck_job_skipped job_id=%s error=%s", job_id, exc)
                return "skipped"
            logger.info("stuck_job_recovered job=%s retry_count=%s", job.job_ref, job.retry_count)
            return "recovered"

    def retry_failed_jobs(self, job_type: str | None = None, limit: int | None = None) -> RecoveryResult:
        """Send failed jobs back to `pending`; dead-letter those past the retry budget."""

        limit = limit or self.settings.recovery_batch_limit
        result = RecoveryResult()
        window_id = None
        for model in job_models(job_type):
            job_ids = self._candidates(model, (model.status == FAILED, model.permanently_failed_at.is_(None)), limit)
            if job_ids and window_id is None:
                window_id = self.settlement.current_window_id()
            for job_id in job_ids:
                action = self._retry_one(model, job_id, window_id)
                setattr(result, action, getattr(result, action) + 1)
                recovery_actions_total.labels(job_type=model.job_type, action=action).inc()
        logger.info(
            "failed_jobs_retried type=%s retried=%s dead_lettered=%s skipped=%s",
            job_type or "all",
            result.retried,
            result.dead_lettered,
            result.skipped,
        )
        return result

    def _dead_letter_reason(self, job) -> str | None:
        if job.retry_count >= self.settings.max_retries:
            return "max_retries_exceeded"
        if job.funds_returned_manually_at is not None:
            return "non_retryable:funds_returned"
        if job.error_message and job.error_message.startswith(NON_RETRYABLE_PREFIXES):
            return "non_retryable:invalid_calculation"
        return None

    def _retry_one(self, model, job_id: str, window_id: int) -> str:
        with self.session_factory() as db, bind_log_context(job_id=job_id):
            job = db.get(model, job_id)
            if job is None or job.status != FAILED or job.is_dead_lettered:
                return "skipped"
            try:
                reason = self._dead_letter_reason(job)
                if reason is not None:
                    self.jobs.mark_permanently_failed(db, job, reason)
                    db.commit()
                    return "dead_lettered"
                self.jobs.retry(db, job)
                self.settlement.assign_job(db, job, window_id)
                db.commit()
            except (OptimisticLockConflict, InvalidTransition) as exc:
                db.rollback()
                logger.warning("failed_job_retry_skipped job_id=%s error=%s", job_id, exc)
                return "skipped"
            logger.info("failed_job_retried job=%s retry_count=%s", job.job_ref, job.retry_count)
            return "retried"

    def run(self, job_type: str | None = None, limit: int | None = None) -> RecoveryResult:
        """Stuck pass, then retry pass; counts are combined."""

        return self.recover_stuck_jobs(job_type, limit).merge(self.retry_failed_jobs(job_type, limit))
