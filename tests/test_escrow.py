"""Escrow deposits, reservations and balance derivation."""

from decimal import Decimal

import pytest

from payledger.common.db import SessionLocal
from payledger.common.errors import DiscrepancyDetected, InsufficientFunds, InvalidEntry, InvalidTransition
from payledger.services.escrow.models import Business
from payledger.services.jobs.models import PaymentJob


def _advance(services, job_id, *statuses, error_message=None):
    for status in statuses:
        with SessionLocal() as db:
            job = db.get(PaymentJob, job_id)
            services.jobs.update_status(db, job, status, error_message=error_message)
            db.commit()
    with SessionLocal() as db:
        return db.get(PaymentJob, job_id)


def test_deposit_then_succeeded_job_leaves_authorized_remainder(services, factory):
    """10000 deposited with a 250 fee, 5000 paid out: 4750 remains."""

    business_id = factory.business()
    deposit = factory.deposit(business_id, 1_000_000, fee_cents=25_000)
    assert deposit.authorized_cents == 975_000
    assert deposit.status == "confirmed"

    job = factory.payment_job(business_id, amount_cents=500_000)
    _advance(services, job.id, "processing", "succeeded")

    assert services.escrow.get_available_balance(business_id) == Decimal("4750.00")
    assert services.escrow.get_available_balance(business_id, use_cache=False) == Decimal("4750.00")
    assert services.escrow.recalculate_balance(business_id) == Decimal("4750.00")
    with SessionLocal() as db:
        assert services.escrow.ledger_balance_cents(db, business_id) == 475_000


def test_default_fee_uses_configured_rate(services, factory):
    business_id = factory.business()
    deposit = services.escrow.create_deposit(business_id, 1_000_000)
    assert deposit.fee_cents == 15_000
    assert deposit.authorized_cents == 985_000


def test_only_confirmed_deposits_fund_the_balance(services, factory):
    business_id = factory.business()
    factory.deposit(business_id, 200_000, confirm=False)
    assert services.escrow.recalculate_balance(business_id) == Decimal("0.00")

    factory.deposit(business_id, 300_000)
    assert services.escrow.recalculate_balance(business_id) == Decimal("3000.00")


def test_confirm_is_idempotent(services, factory):
    business_id = factory.business()
    deposit = factory.deposit(business_id, 100_000)
    services.escrow.confirm_deposit(deposit.deposit_id)

    with SessionLocal() as db:
        assert db.get(Business, business_id).escrow_balance_cents == 100_000
        assert services.escrow.ledger_balance_cents(db, business_id) == 100_000


@pytest.mark.parametrize("amount, fee", [(0, 0), (-100, 0), (1_000, 2_000)])
def test_invalid_deposits_rejected(services, factory, amount, fee):
    business_id = factory.business()
    with pytest.raises(InvalidEntry):
        services.escrow.create_deposit(business_id, amount, fee_cents=fee)


def test_pending_jobs_reduce_balance_only_when_requested(services, factory):
    business_id = factory.funded_business(1_000_000)
    factory.payment_job(business_id, amount_cents=200_000)

    assert services.escrow.get_available_balance(business_id, use_cache=False) == Decimal("10000.00")
    assert services.escrow.get_available_balance(business_id, use_cache=False, include_pending=True) == Decimal(
        "8000.00"
    )
    assert services.escrow.get_available_balance(business_id, include_pending=True) == Decimal("8000.00")


def test_failed_job_releases_reservation(services, factory):
    """processing -> failed reverses the funding entries and restores the cache."""

    business_id = factory.funded_business(1_000_000)
    job = factory.payment_job(business_id, amount_cents=300_000)
    _advance(services, job.id, "processing")
    assert services.escrow.get_available_balance(business_id) == Decimal("7000.00")

    job = _advance(services, job.id, "failed", error_message="gateway declined")
    assert job.reservation_correlation_id is None
    assert services.escrow.get_available_balance(business_id) == Decimal("10000.00")
    assert services.escrow.recalculate_balance(business_id) == Decimal("10000.00")
    with SessionLocal() as db:
        assert services.escrow.ledger_balance_cents(db, business_id) == 1_000_000
    assert services.ledger.verify_balances()["balanced"] is True


def test_reservation_requires_sufficient_funds(services, factory):
    business_id = factory.funded_business(100_000)
    job = factory.payment_job(business_id, amount_cents=200_000)

    with SessionLocal() as db:
        job = db.get(PaymentJob, job.id)
        with pytest.raises(InsufficientFunds) as exc:
            services.jobs.update_status(db, job, "processing")
    assert exc.value.details["available_cents"] == 100_000
    assert exc.value.details["required_cents"] == 200_000


def test_frozen_business_cannot_reserve(services, factory):
    business_id = factory.funded_business(1_000_000)
    job = factory.payment_job(business_id)
    with SessionLocal() as db:
        db.get(Business, business_id).is_frozen = True
        db.commit()

    with SessionLocal() as db:
        job = db.get(PaymentJob, job.id)
        with pytest.raises(DiscrepancyDetected):
            services.jobs.update_status(db, job, "processing")


def test_fund_return_for_failed_job(services, factory):
    business_id = factory.funded_business(1_000_000)
    job = factory.payment_job(business_id, amount_cents=250_000)
    _advance(services, job.id, "processing")
    _advance(services, job.id, "failed", error_message="declined")

    returned = services.escrow.record_fund_return(PaymentJob, job.id, released_by="ops@acme")
    assert returned.funds_returned_manually_at is not None
    assert returned.released_by == "ops@acme"

    assert services.escrow.recalculate_balance(business_id) == Decimal("7500.00")
    assert services.escrow.get_available_balance(business_id) == Decimal("7500.00")
    with SessionLocal() as db:
        assert services.escrow.ledger_balance_cents(db, business_id) == 750_000

    again = services.escrow.record_fund_return(PaymentJob, job.id, released_by="ops@acme")
    assert again.version == returned.version


def test_fund_return_rejected_for_unfunded_job(services, factory):
    business_id = factory.funded_business(1_000_000)
    job = factory.payment_job(business_id)
    with pytest.raises(InvalidTransition):
        services.escrow.record_fund_return(PaymentJob, job.id, released_by="ops@acme")


def test_fee_release_stamps_once(services, factory):
    business_id = factory.funded_business(1_000_000)
    job = factory.payment_job(business_id)
    _advance(services, job.id, "processing", "succeeded")

    first = services.escrow.record_fee_release(PaymentJob, job.id, released_by="finance")
    second = services.escrow.record_fee_release(PaymentJob, job.id, released_by="someone-else")
    assert first.fee_released_manually_at is not None
    assert second.released_by == "finance"
