from datetime import timedelta
from decimal import Decimal

import pytest

from payledger.common.db import SessionLocal
from payledger.services.jobs.models import PaymentJob, PayrollJob


def _start_processing(services, job):
    with SessionLocal() as db:
        row = db.get(type(job), job.id)
        services.jobs.update_status(db, row, "processing")
        db.commit()
        return row


def _load(model, job_id):
    with SessionLocal() as db:
        return db.get(model, job_id)


def test_stuck_job_is_reset_and_fresh_one_untouched(services, factory, clock):
    business_id = factory.funded_business()
    stuck = _start_processing(services, factory.payment_job(business_id))
    clock.advance(minutes=31)
    fresh = _start_processing(services, factory.payment_job(business_id))

    result = services.recovery.recover_stuck_jobs()

    assert result.detected == 1
    assert result.recovered == 1
    recovered = _load(PaymentJob, stuck.id)
    assert recovered.status == "pending"
    assert recovered.retry_count == 1
    assert recovered.reservation_correlation_id is None
    assert recovered.settlement_window_id == services.settlement.current_window_id()
    assert _load(PaymentJob, fresh.id).status == "processing"
    assert services.escrow.get_available_balance(business_id) == Decimal("99500.00")
    assert services.escrow.recalculate_balance(business_id) == Decimal("99500.00")


def test_job_inside_timeout_is_not_stuck(services, factory, clock):
    business_id = factory.funded_business()
    job = _start_processing(services, factory.payment_job(business_id))
    clock.advance(minutes=29)

    assert services.recovery.recover_stuck_jobs().detected == 0
    assert _load(PaymentJob, job.id).status == "processing"


def test_stuck_job_out_of_retries_is_failed(services, factory, clock):
    business_id = factory.funded_business()
    job = factory.raw_payroll_job(
        business_id, status="processing", retry_count=3, updated_at=clock.now() - timedelta(hours=2)
    )

    result = services.recovery.recover_stuck_jobs("payroll")

    assert result.failed == 1
    failed = _load(PayrollJob, job.id)
    assert failed.status == "failed"
    assert failed.error_message == "stuck in processing; retry budget exhausted"


def test_failed_job_is_retried_into_current_window(services, factory):
    business_id = factory.funded_business()
    job = factory.raw_payroll_job(business_id, status="failed", error_message="gateway unavailable: ConnectError")

    result = services.recovery.retry_failed_jobs()

    assert result.retried == 1
    retried = _load(PayrollJob, job.id)
    assert retried.status == "pending"
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert retried.settlement_window_id is not None


def test_exhausted_job_is_dead_lettered_once(services, factory):
    business_id = factory.funded_business()
    job = factory.raw_payroll_job(business_id, status="failed", retry_count=3)

    first = services.recovery.retry_failed_jobs()
    second = services.recovery.retry_failed_jobs()

    assert first.dead_lettered == 1
    assert second.dead_lettered == 0
    assert second.retried == 0
    dead = _load(PayrollJob, job.id)
    assert dead.status == "failed"
    assert dead.failed_reason == "max_retries_exceeded"
    assert dead.permanently_failed_at is not None


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"error_message": "Net salary was negative - corrected to 0"}, "non_retryable:invalid_calculation"),
        ({"error_message": "duplicate payroll job for period (kept x)"}, "non_retryable:invalid_calculation"),
    ],
)
def test_non_retryable_failures_are_dead_lettered(services, factory, overrides, reason):
    business_id = factory.funded_business()
    job = factory.raw_payroll_job(business_id, status="failed", **overrides)

    result = services.recovery.retry_failed_jobs("payroll")

    assert result.dead_lettered == 1
    assert _load(PayrollJob, job.id).failed_reason == reason


def test_run_combines_both_passes(services, factory, clock):
    business_id = factory.funded_business()
    factory.raw_payroll_job(business_id, status="processing", updated_at=clock.now() - timedelta(hours=1))
    factory.raw_payroll_job(
        business_id, employee=factory.employee(business_id, name="Sipho Dlamini"), status="failed"
    )

    result = services.recovery.run(limit=10)

    assert result.detected == 1
    assert result.recovered == 1
    assert result.retried == 1


def test_returned_funds_are_never_retried(services, factory, clock):
    business_id = factory.funded_business()
    job = factory.raw_payroll_job(
        business_id, status="failed", funds_returned_manually_at=clock.now(), released_by="ops@acme"
    )

    result = services.recovery.retry_failed_jobs("payroll")

    assert result.dead_lettered == 1
    assert _load(PayrollJob, job.id).failed_reason == "non_retryable:funds_returned"
