from datetime import datetime, timedelta, timezone

import pytest

from payledger.common.db import SessionLocal
from payledger.common.errors import InvalidEntry
from payledger.services.escrow.models import Business
from payledger.services.jobs.models import PaymentJob, PayrollJob
from payledger.services.settlement.gateway import GatewayResult
from payledger.services.settlement.models import SettlementWindow
from payledger.services.settlement.service import window_bounds


def _assign(services, job, window_id=None):
    window_id = window_id or services.settlement.current_window_id()
    with SessionLocal() as db:
        row = db.get(type(job), job.id)
        services.settlement.assign_job(db, row, window_id)
        db.commit()
    return window_id


def _load(model, job_id):
    with SessionLocal() as db:
        return db.get(model, job_id)


@pytest.mark.parametrize(
    "window_type, start, end",
    [
        ("hourly", datetime(2026, 3, 15, 9, tzinfo=timezone.utc), datetime(2026, 3, 15, 10, tzinfo=timezone.utc)),
        ("daily", datetime(2026, 3, 15, tzinfo=timezone.utc), datetime(2026, 3, 16, tzinfo=timezone.utc)),
        ("custom", datetime(2026, 3, 15, 8, tzinfo=timezone.utc), datetime(2026, 3, 15, 12, tzinfo=timezone.utc)),
    ],
)
def test_window_bounds(window_type, start, end):
    assert window_bounds(window_type, datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)) == (start, end)


def test_unknown_window_type_rejected():
    with pytest.raises(InvalidEntry):
        window_bounds("fortnightly", datetime(2026, 3, 15, tzinfo=timezone.utc))


def test_current_window_is_reused_until_it_ends(services, clock):
    first = services.settlement.current_window_id()
    assert services.settlement.current_window_id() == first

    clock.advance(hours=1)
    assert services.settlement.current_window_id() != first


def test_assign_job_grows_window_totals(services, factory):
    business_id = factory.funded_business()
    payroll = factory.payroll_job(business_id)
    payment = factory.payment_job(business_id, amount_cents=80_000)

    window_id = _assign(services, payroll)
    _assign(services, payment, window_id)
    _assign(services, payment, window_id)

    with SessionLocal() as db:
        window = db.get(SettlementWindow, window_id)
    assert window.transaction_count == 2
    assert window.total_amount_cents == payroll.net_salary_cents + 80_000
    assert _load(PaymentJob, payment.id).settlement_window_id == window_id


def test_process_window_settles_every_job(services, factory, gateway):
    business_id = factory.funded_business()
    payroll = factory.payroll_job(business_id)
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payroll)
    _assign(services, payment, window_id)

    result = services.settlement.process_window(window_id, gateway)

    assert result.status == "processed"
    assert result.succeeded == 2
    assert result.failed == 0
    assert result.attempts == 1
    assert result.by_type["payroll"]["succeeded"] == 1
    assert result.by_type["payment"]["succeeded"] == 1
    assert result.transaction_count == 2
    assert result.total_amount_cents == payroll.net_salary_cents + 50_000
    assert _load(PayrollJob, payroll.id).status == "succeeded"
    assert _load(PaymentJob, payment.id).status == "succeeded"
    assert {d.job_id for d in gateway.dispatches} == {payroll.id, payment.id}
    assert all(":" in d.idempotency_key for d in gateway.dispatches)

    with SessionLocal() as db:
        ledger = services.escrow.ledger_balance_cents(db, business_id)
    assert ledger == 10_000_000 - payroll.net_salary_cents - 50_000


def test_declined_payout_fails_job_and_releases_funds(services, factory, gateway):
    business_id = factory.funded_business()
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payment)
    gateway.declined.add(payment.id)

    result = services.settlement.process_window(window_id, gateway)

    job = _load(PaymentJob, payment.id)
    assert result.failed == 1
    assert result.status == "processed"
    assert job.status == "failed"
    assert job.error_message == "beneficiary account closed"
    assert services.escrow.get_available_balance(business_id, use_cache=False) == services.escrow.get_available_balance(
        business_id
    )
    with SessionLocal() as db:
        assert services.escrow.ledger_balance_cents(db, business_id) == 10_000_000


def test_insufficient_escrow_fails_job_without_dispatch(services, factory, gateway):
    business_id = factory.business()
    factory.deposit(business_id, 20_000)
    payment = factory.payment_job(business_id, amount_cents=50_000)
    window_id = _assign(services, payment)

    result = services.settlement.process_window(window_id, gateway)

    assert result.failed == 1
    assert gateway.dispatches == []
    assert _load(PaymentJob, payment.id).error_message == "insufficient escrow balance"


def test_rerun_of_processed_window_dispatches_nothing(services, factory, gateway):
    business_id = factory.funded_business()
    window_id = _assign(services, factory.payment_job(business_id))
    services.settlement.process_window(window_id, gateway)

    again = services.settlement.process_window(window_id, gateway)

    assert again.already_processed is True
    assert again.attempts == 1
    assert len(gateway.dispatches) == 1


def test_window_lock_held_reports_in_progress(services, factory, gateway):
    business_id = factory.funded_business()
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payment)
    assert services.locks.acquire(f"settlement_window:{window_id}")

    result = services.settlement.process_window(window_id, gateway)

    assert result.status == "in_progress"
    assert gateway.dispatches == []
    assert _load(PaymentJob, payment.id).status == "pending"


def test_frozen_business_jobs_are_held(services, factory, gateway):
    business_id = factory.funded_business()
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payment)
    with SessionLocal() as db:
        db.get(Business, business_id).is_frozen = True
        db.commit()

    result = services.settlement.process_window(window_id, gateway)

    assert result.skipped == 1
    assert result.status == "processing"
    assert _load(PaymentJob, payment.id).status == "pending"

    with SessionLocal() as db:
        db.get(Business, business_id).is_frozen = False
        db.commit()
    resumed = services.settlement.process_window(window_id, gateway)

    assert resumed.succeeded == 1
    assert resumed.attempts == 2
    assert resumed.status == "processed"


def test_process_due_windows_waits_for_window_end(services, factory, gateway, clock):
    business_id = factory.funded_business()
    _assign(services, factory.payment_job(business_id))

    assert services.settlement.process_due_windows(gateway) == []

    clock.set(datetime(2026, 3, 15, 10, tzinfo=timezone.utc) + timedelta(minutes=1))
    results = services.settlement.process_due_windows(gateway)

    assert [r.status for r in results] == ["processed"]
    assert len(gateway.dispatches) == 1


class CrashingGateway:
    """Accepts the payout, then the worker dies before recording it."""

    def __init__(self) -> None:
        self.dispatches = []

    def execute(self, dispatch):
        self.dispatches.append(dispatch)
        raise RuntimeError("worker killed mid-dispatch")


class ScriptedGateway:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.dispatches = []

    def execute(self, dispatch):
        self.dispatches.append(dispatch)
        return self.results.pop(0)


def test_stuck_job_is_redispatched_under_its_original_key(services, factory, gateway, clock):
    business_id = factory.funded_business()
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payment)
    crashing = CrashingGateway()

    with pytest.raises(RuntimeError):
        services.settlement.process_window(window_id, crashing)
    first_key = crashing.dispatches[0].idempotency_key
    stuck = _load(PaymentJob, payment.id)
    assert stuck.status == "processing"
    assert stuck.dispatch_key == first_key

    clock.advance(minutes=31)
    assert services.recovery.recover_stuck_jobs().recovered == 1
    reset = _load(PaymentJob, payment.id)
    assert reset.status == "pending"
    assert reset.dispatch_key == first_key

    result = services.settlement.process_window(reset.settlement_window_id, gateway)

    assert result.succeeded == 1
    assert [d.idempotency_key for d in gateway.dispatches] == [first_key]


def test_unknown_outcome_keeps_key_but_decline_rotates_it(services, factory, clock):
    business_id = factory.funded_business()
    payment = factory.payment_job(business_id)
    window_id = _assign(services, payment)
    scripted = ScriptedGateway(
        GatewayResult(succeeded=False, error="gateway unavailable: ConnectTimeout", outcome_known=False),
        GatewayResult(succeeded=False, error="beneficiary account closed"),
        GatewayResult(succeeded=True, reference="ref-3"),
    )

    services.settlement.process_window(window_id, scripted)
    for _ in range(2):
        clock.advance(hours=1)
        assert services.recovery.retry_failed_jobs().retried == 1
        services.settlement.process_window(_load(PaymentJob, payment.id).settlement_window_id, scripted)

    first, second, third = (d.idempotency_key for d in scripted.dispatches)
    assert second == first
    assert third != second
    assert _load(PaymentJob, payment.id).status == "succeeded"
