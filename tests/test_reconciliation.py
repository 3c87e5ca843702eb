import pytest
from sqlalchemy import event, select, update
from sqlalchemy.dialects import postgresql

from payledger.common.db import SessionLocal
from payledger.common.errors import InvalidTransition
from payledger.services.audit.models import AuditEvent
from payledger.services.escrow.models import Business
from payledger.services.reconciliation.models import ReconciliationDiscrepancy


def _bump_cache(business_id, delta_cents):
    with SessionLocal() as db:
        db.execute(
            update(Business)
            .where(Business.business_id == business_id)
            .values(escrow_balance_cents=Business.escrow_balance_cents + delta_cents)
        )
        db.commit()


def _business(business_id):
    with SessionLocal() as db:
        return db.get(Business, business_id)


def _audit_actions(business_id):
    with SessionLocal() as db:
        return [
            row.action
            for row in db.execute(
                select(AuditEvent).where(AuditEvent.business_id == business_id).order_by(AuditEvent.created_at)
            ).scalars()
        ]


def _discrepancies(business_id):
    with SessionLocal() as db:
        return db.execute(
            select(ReconciliationDiscrepancy).where(ReconciliationDiscrepancy.business_id == business_id)
        ).scalars().all()


def test_clean_business_reconciles(services, factory):
    business_id = factory.funded_business()

    result = services.reconciliation.reconcile_balance(business_id)

    assert result.reconciled
    assert result.stored_balance_cents == result.calculated_balance_cents == result.ledger_balance_cents == 10_000_000
    assert _discrepancies(business_id) == []


def test_cache_drift_is_recorded_and_freezes_business(services, factory):
    business_id = factory.funded_business(amount_cents=1_000_000)
    _bump_cache(business_id, 500)

    result = services.reconciliation.reconcile_balance(business_id)

    assert not result.reconciled
    assert result.fixed is False
    assert result.frozen is True
    assert result.discrepancies[0]["type"] == "stored_vs_calculated"
    assert result.discrepancies[0]["difference_cents"] == -500
    assert _business(business_id).escrow_balance_cents == 1_000_500
    assert [d.status for d in _discrepancies(business_id)] == ["open"]
    assert "business.frozen" in _audit_actions(business_id)


def test_auto_fix_corrects_cache_with_audit_row(services, factory):
    business_id = factory.funded_business(amount_cents=1_000_000)
    _bump_cache(business_id, 500)
    services.reconciliation.reconcile_balance(business_id)

    result = services.reconciliation.reconcile_balance(business_id, auto_fix=True)

    business = _business(business_id)
    assert result.fixed is True
    assert result.unresolved == 0
    assert business.escrow_balance_cents == 1_000_000
    assert business.is_frozen is False
    assert {d.status for d in _discrepancies(business_id)} == {"resolved"}
    assert "reconciliation.balance_corrected" in _audit_actions(business_id)
    assert services.reconciliation.reconcile_balance(business_id).reconciled


def test_drift_within_tolerance_is_ignored(services, factory):
    business_id = factory.funded_business()
    _bump_cache(business_id, 1)

    assert services.reconciliation.reconcile_balance(business_id).reconciled


def test_small_drift_is_recorded_without_freezing(services, factory):
    business_id = factory.funded_business()
    _bump_cache(business_id, -50)

    result = services.reconciliation.reconcile_balance(business_id)

    assert result.discrepancies[0]["difference_cents"] == 50
    assert result.frozen is False


def test_repeat_runs_keep_one_open_discrepancy(services, factory):
    business_id = factory.funded_business()
    _bump_cache(business_id, 500)
    services.reconciliation.reconcile_balance(business_id)
    _bump_cache(business_id, 200)

    services.reconciliation.reconcile_balance(business_id)

    records = _discrepancies(business_id)
    assert len(records) == 1
    assert records[0].difference_cents == -700


def test_ledger_drift_is_never_auto_fixed(services, factory):
    business_id = factory.business()
    deposit = factory.deposit(business_id, 10_000_000)
    job = factory.raw_payroll_job(business_id, status="succeeded", escrow_deposit_id=deposit.deposit_id)

    result = services.reconciliation.reconcile_balance(business_id, auto_fix=True)

    by_type = {item["type"]: item for item in result.discrepancies}
    assert by_type["stored_vs_calculated"]["auto_fixed"] is True
    assert by_type["calculated_vs_ledger"]["auto_fixed"] is False
    assert by_type["calculated_vs_ledger"]["difference_cents"] == job.net_salary_cents
    assert result.frozen is True
    assert result.unresolved == 1


def test_approval_trail_unfreezes_when_last_item_resolves(services, factory, clock):
    business_id = factory.funded_business()
    _bump_cache(business_id, 500)
    discrepancy_id = services.reconciliation.reconcile_balance(business_id).discrepancies[0]["id"]

    services.reconciliation.approve_discrepancy(discrepancy_id, "ops@acme", notes="cache bumped by bad import")
    with pytest.raises(InvalidTransition):
        services.reconciliation.approve_discrepancy(discrepancy_id, "ops@acme")
    clock.advance(minutes=5)
    compensated = services.reconciliation.compensate_discrepancy(discrepancy_id, "finance@acme")
    assert compensated.status == "compensated"
    assert _business(business_id).escrow_balance_cents == 10_000_000
    assert _business(business_id).is_frozen is True
    clock.advance(minutes=5)

    resolved = services.reconciliation.resolve_discrepancy(discrepancy_id, "finance@acme")

    assert resolved.status == "resolved"
    assert resolved.approved_by == "ops@acme"
    assert resolved.compensated_by == "finance@acme"
    assert _business(business_id).is_frozen is False
    actions = _audit_actions(business_id)
    assert actions.index("reconciliation.approved") < actions.index("reconciliation.compensated")
    assert actions.index("reconciliation.compensated") < actions.index("reconciliation.resolved")
    assert "business.unfrozen" in actions


def test_compensation_requires_approval(services, factory):
    business_id = factory.funded_business()
    _bump_cache(business_id, 500)
    discrepancy_id = services.reconciliation.reconcile_balance(business_id).discrepancies[0]["id"]

    with pytest.raises(InvalidTransition):
        services.reconciliation.compensate_discrepancy(discrepancy_id, "finance@acme")


def test_reconcile_all_aggregates(services, factory):
    clean = factory.funded_business()
    drifted = factory.funded_business()
    _bump_cache(drifted, 500)

    summary = services.reconciliation.reconcile_all()

    assert summary.businesses_checked == 2
    assert summary.issues == 1
    assert summary.fixed == 0
    assert summary.unresolved == 1
    assert summary.frozen == 1
    assert {r["business_id"] for r in summary.results} == {clean, drifted}


@pytest.fixture
def business_selects():
    """Business row reads as PostgreSQL would run them."""

    statements = []

    def capture(state):
        if state.is_select:
            sql = str(state.statement.compile(dialect=postgresql.dialect()))
            if "FROM businesses" in sql:
                statements.append(sql)

    event.listen(SessionLocal, "do_orm_execute", capture)
    yield statements
    event.remove(SessionLocal, "do_orm_execute", capture)


def test_cache_overwrites_hold_the_business_row(services, factory, business_selects):
    business_id = factory.funded_business()
    _bump_cache(business_id, 500)

    discrepancy_id = services.reconciliation.reconcile_balance(business_id).discrepancies[0]["id"]
    assert not any("FOR UPDATE" in sql for sql in business_selects)

    services.reconciliation.approve_discrepancy(discrepancy_id, "ops@acme")
    services.reconciliation.compensate_discrepancy(discrepancy_id, "finance@acme")
    assert any("FOR UPDATE" in sql for sql in business_selects)

    business_selects.clear()
    _bump_cache(business_id, 500)
    services.reconciliation.reconcile_balance(business_id, auto_fix=True)
    assert "FOR UPDATE" in business_selects[0]
    assert _business(business_id).escrow_balance_cents == 10_000_000
