import json

from sqlalchemy import update

from payledger.cli import EXIT_IN_PROGRESS, EXIT_ISSUES, EXIT_OK, main
from payledger.common.db import SessionLocal
from payledger.services.escrow.models import Business


def _output(capsys):
    return json.loads(capsys.readouterr().out)


def _drift(business_id, delta_cents):
    with SessionLocal() as db:
        db.execute(
            update(Business)
            .where(Business.business_id == business_id)
            .values(escrow_balance_cents=Business.escrow_balance_cents + delta_cents)
        )
        db.commit()


def test_schedules_run(services, factory, gateway, capsys):
    business_id = factory.funded_business()
    factory.payroll_schedule(business_id, [factory.employee(business_id)])

    code = main(["schedules", "run", "--type", "payroll"], services=services, gateway=gateway)

    assert code == EXIT_OK
    assert _output(capsys)["jobs_created"] == 1


def test_settlement_process_window(services, factory, gateway, capsys):
    business_id = factory.funded_business()
    factory.payroll_schedule(business_id, [factory.employee(business_id)])
    services.schedules.run_due_schedules()
    window_id = services.settlement.current_window_id()

    code = main(["settlement", "process", "--window-id", str(window_id)], services=services, gateway=gateway)

    assert code == EXIT_OK
    assert _output(capsys)["windows"][0]["succeeded"] == 1


def test_settlement_lock_held_exits_in_progress(services, gateway, capsys):
    window_id = services.settlement.current_window_id()
    services.locks.acquire(f"settlement_window:{window_id}")

    code = main(["settlement", "process", "--window-id", str(window_id)], services=services, gateway=gateway)

    assert code == EXIT_IN_PROGRESS
    assert _output(capsys)["windows"][0]["status"] == "in_progress"


def test_reconcile_balances_exit_codes(services, factory, capsys):
    business_id = factory.funded_business()
    assert main(["reconcile", "balances"], services=services) == EXIT_OK
    capsys.readouterr()

    _drift(business_id, 500)
    assert main(["reconcile", "balances", "--business", business_id], services=services) == EXIT_ISSUES
    assert _output(capsys)["reconciled"] is False

    assert main(["reconcile", "balances", "--business", business_id, "--auto-fix"], services=services) == EXIT_OK
    assert _output(capsys)["fixed"] is True


def test_reconcile_payroll_fix(services, factory, capsys):
    business_id = factory.funded_business()
    factory.raw_payroll_job(business_id, net_salary_cents=-100)

    assert main(["reconcile", "payroll"], services=services) == EXIT_ISSUES
    assert _output(capsys)["issues_by_type"] == {"negative_net_salary": 1}
    assert main(["reconcile", "payroll", "--fix"], services=services) == EXIT_OK


def test_snapshots_create(services, factory, capsys):
    factory.funded_business()

    assert main(["snapshots", "create", "--date", "2026-03-15"], services=services) == EXIT_OK
    assert _output(capsys)["succeeded"] == 1


def test_jobs_recover(services, capsys):
    assert main(["jobs", "recover", "--type", "payroll", "--limit", "5"], services=services) == EXIT_OK
    assert _output(capsys)["detected"] == 0


def test_domain_error_is_reported_as_json(services, capsys):
    code = main(["jobs", "recalculate", "no-such-job"], services=services)

    assert code == EXIT_ISSUES
    assert _output(capsys)["error"] == "InvalidEntry"


def test_ledger_verify(services, factory, capsys):
    factory.funded_business()

    assert main(["ledger", "verify"], services=services) == EXIT_OK
    assert _output(capsys)["transactions_checked"] == 1
