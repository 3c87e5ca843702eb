from datetime import date

from sqlalchemy import update

from payledger.common.db import SessionLocal
from payledger.services.ledger.models import BalanceSnapshot

TODAY = date(2026, 3, 15)


def test_snapshot_covers_posted_entries_up_to_end_of_day(services, factory):
    business_id = factory.funded_business()

    snapshot = services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)
    earlier = services.snapshots.create_snapshot(business_id, "ESCROW", date(2026, 3, 14))

    assert snapshot.balance_minor_units == 10_000_000
    assert snapshot.entry_count == 1
    assert snapshot.currency == "ZAR"
    assert earlier.balance_minor_units == 0
    assert earlier.entry_count == 0
    assert services.snapshots.verify_snapshot(snapshot.id)


def test_pending_reservations_are_excluded(services, factory):
    business_id = factory.funded_business()
    job = factory.payment_job(business_id)
    with SessionLocal() as db:
        services.jobs.update_status(db, services.jobs.get_job(db, "payment", job.id), "processing")
        db.commit()

    snapshot = services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)

    assert snapshot.balance_minor_units == 10_000_000
    with SessionLocal() as db:
        assert services.ledger.account_balance(db, business_id, "ESCROW") == 9_950_000


def test_rerun_overwrites_same_day_snapshot(services, factory):
    business_id = factory.funded_business()
    first = services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)
    factory.deposit(business_id, 250_000)

    second = services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)

    assert second.id == first.id
    assert second.balance_minor_units == 10_250_000
    assert second.entry_count == 2


def test_balance_from_snapshot_adds_later_entries(services, factory, clock):
    business_id = factory.funded_business()
    services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)
    clock.advance(days=1)
    factory.deposit(business_id, 500_000)

    assert services.snapshots.balance_from_snapshot(business_id, "ESCROW") == 10_500_000
    assert services.snapshots.balance_from_snapshot(business_id, "ESCROW", as_of=TODAY) == 10_000_000


def test_tampered_snapshot_fails_verification(services, factory):
    business_id = factory.funded_business()
    snapshot = services.snapshots.create_snapshot(business_id, "ESCROW", TODAY)
    with SessionLocal() as db:
        db.execute(update(BalanceSnapshot).where(BalanceSnapshot.id == snapshot.id).values(checksum="0" * 64))
        db.commit()

    assert services.snapshots.verify_snapshot(snapshot.id) is False
    assert services.snapshots.verify_snapshot("missing") is False


def test_daily_run_defaults_to_yesterday_for_every_business(services, factory):
    factory.funded_business()
    factory.business(name="Dormant Ltd")

    result = services.snapshots.create_snapshots()

    assert result.snapshot_date == "2026-03-14"
    assert result.processed == 2
    assert result.succeeded == 2
    assert result.failed == 0
