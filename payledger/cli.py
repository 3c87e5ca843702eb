"""Operator CLI for the ledger and job engine.

Every command prints a JSON summary. Exit status is 0 when nothing is left to
do, 1 when unresolved issues remain and 2 when another run holds the lock.
"""

import argparse
import json
import sys
from datetime import date

from payledger.common.clock import SystemClock
from payledger.common.config import settings
from payledger.common.db import SessionLocal
from payledger.common.errors import LedgerCoreError, LockUnavailable
from payledger.common.logging import configure_logging
from payledger.services.registry import build_services
from payledger.services.settlement.gateway import HttpPaymentGateway

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_IN_PROGRESS = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="payledger", description="Ledger, escrow and job consistency operations.")
    commands = parser.add_subparsers(dest="group", required=True)

    schedules = commands.add_parser("schedules").add_subparsers(dest="action", required=True)
    run = schedules.add_parser("run", help="Materialize jobs for due schedules.")
    run.add_argument("--type", choices=["payment", "payroll"], default=None)

    settlement = commands.add_parser("settlement").add_subparsers(dest="action", required=True)
    process = settlement.add_parser("process", help="Process one settlement window or every due one.")
    target = process.add_mutually_exclusive_group(required=True)
    target.add_argument("--window-id", type=int)
    target.add_argument("--due", action="store_true")

    reconcile = commands.add_parser("reconcile").add_subparsers(dest="action", required=True)
    balances = reconcile.add_parser("balances", help="Compare stored, calculated and ledger balances.")
    balances.add_argument("--business", default=None)
    balances.add_argument("--auto-fix", action="store_true")
    payroll = reconcile.add_parser("payroll", help="Validate payroll job calculations.")
    payroll.add_argument("--business", default=None)
    payroll.add_argument("--fix", action="store_true")

    snapshots = commands.add_parser("snapshots").add_subparsers(dest="action", required=True)
    create = snapshots.add_parser("create", help="Create end-of-day balance snapshots.")
    create.add_argument("--date", type=date.fromisoformat, default=None)
    create.add_argument("--account", default="ESCROW")
    create.add_argument("--business", default=None)

    jobs = commands.add_parser("jobs").add_subparsers(dest="action", required=True)
    recover = jobs.add_parser("recover", help="Recover stuck jobs and retry failed ones.")
    recover.add_argument("--type", choices=["all", "payment", "payroll"], default="all")
    recover.add_argument("--limit", type=int, default=None)
    recalculate = jobs.add_parser("recalculate", help="Recalculate one payroll job from current data.")
    recalculate.add_argument("job_id")
    recalculate.add_argument("--force", action="store_true")
    recalculate.add_argument("--actor", default="cli")

    ledger = commands.add_parser("ledger").add_subparsers(dest="action", required=True)
    verify = ledger.add_parser("verify", help="Check that every ledger transaction balances.")
    verify.add_argument("--limit", type=int, default=None)
    return parser


def default_services():
    return build_services(SessionLocal, settings, SystemClock())


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_command(args, services, gateway=None) -> int:
    command = (args.group, args.action)

    if command == ("schedules", "run"):
        result = services.schedules.run_due_schedules(args.type)
        _emit(result.to_dict())
        return EXIT_ISSUES if result.failed else EXIT_OK

    if command == ("settlement", "process"):
        if gateway is None:
            gateway = HttpPaymentGateway(services.settings)
        if args.due:
            results = services.settlement.process_due_windows(gateway)
        else:
            results = [services.settlement.process_window(args.window_id, gateway)]
        _emit({"windows": [result.to_dict() for result in results]})
        if any(result.status == "in_progress" for result in results):
            return EXIT_IN_PROGRESS
        return EXIT_ISSUES if any(result.status != "processed" for result in results) else EXIT_OK

    if command == ("reconcile", "balances"):
        if args.business:
            result = services.reconciliation.reconcile_balance(args.business, auto_fix=args.auto_fix)
            _emit(result.to_dict())
            return EXIT_ISSUES if result.unresolved else EXIT_OK
        summary = services.reconciliation.reconcile_all(auto_fix=args.auto_fix)
        _emit(summary.to_dict())
        return EXIT_ISSUES if summary.unresolved else EXIT_OK

    if command == ("reconcile", "payroll"):
        report = services.integrity.run(business_id=args.business, fix=args.fix)
        _emit(report.to_dict())
        return EXIT_ISSUES if report.unresolved else EXIT_OK

    if command == ("snapshots", "create"):
        result = services.snapshots.create_snapshots(args.date, args.account, business_id=args.business)
        _emit(result.to_dict())
        return EXIT_ISSUES if result.failed else EXIT_OK

    if command == ("jobs", "recover"):
        result = services.recovery.run(args.type, args.limit)
        _emit(result.to_dict())
        return EXIT_OK

    if command == ("jobs", "recalculate"):
        result = services.recalculator.recalculate_job(args.job_id, force=args.force, actor=args.actor)
        _emit(result.to_dict())
        return EXIT_IN_PROGRESS if result.status == "in_progress" else EXIT_OK

    if command == ("ledger", "verify"):
        report = services.ledger.verify_balances(limit=args.limit)
        _emit(report)
        return EXIT_OK if report["balanced"] else EXIT_ISSUES

    raise ValueError(f"unknown command {command}")


def main(argv: list[str] | None = None, services=None, gateway=None) -> int:
    """CLI entrypoint; returns the process exit status."""

    args = build_parser().parse_args(argv)
    if services is None:
        configure_logging()
        services = default_services()
    try:
        return run_command(args, services, gateway=gateway)
    except LedgerCoreError as exc:
        _emit(exc.to_dict())
        return EXIT_IN_PROGRESS if isinstance(exc, LockUnavailable) else EXIT_ISSUES


if __name__ == "__main__":
    sys.exit(main())
