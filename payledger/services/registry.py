"""Explicit wiring of every component for one session factory, settings and clock."""

from dataclasses import dataclass

from payledger.common.db import Base
from payledger.services.audit.service import AuditService
from payledger.services.escrow.service import EscrowBalanceEngine
from payledger.services.jobs.calculator import FlatRateCalculator
from payledger.services.jobs.recalculation import PayrollRecalculator
from payledger.services.jobs.service import JobStateMachine
from payledger.services.ledger.service import LedgerStore
from payledger.services.ledger.snapshots import SnapshotService
from payledger.services.locks.service import build_lock_service
from payledger.services.outbox.service import OutboxPublisher
from payledger.services.reconciliation.integrity import PayrollIntegrityChecker
from payledger.services.reconciliation.service import ReconciliationEngine
from payledger.services.recovery.service import RecoveryEngine
from payledger.services.schedules.service import ScheduleEngine
from payledger.services.settlement.service import SettlementService


@dataclass
class Services:
    session_factory: object
    settings: object
    clock: object
    ledger: LedgerStore
    snapshots: SnapshotService
    audit: AuditService
    escrow: EscrowBalanceEngine
    jobs: JobStateMachine
    locks: object
    settlement: SettlementService
    schedules: ScheduleEngine
    reconciliation: ReconciliationEngine
    integrity: PayrollIntegrityChecker
    recovery: RecoveryEngine
    recalculator: PayrollRecalculator
    calculator: object

    def outbox_publisher(self, bus=None) -> OutboxPublisher:
        return OutboxPublisher(self.session_factory, self.settings, self.clock, bus=bus)


def build_services(session_factory, settings, clock, calculator=None, lock_service=None) -> Services:
    calculator = calculator or FlatRateCalculator.from_settings(settings)
    locks = lock_service or build_lock_service(session_factory, settings, clock)
    audit = AuditService(clock)
    ledger = LedgerStore(session_factory, settings, clock)
    escrow = EscrowBalanceEngine(session_factory, settings, clock, ledger, audit)
    jobs = JobStateMachine(session_factory, settings, clock, escrow)
    settlement = SettlementService(session_factory, settings, clock, jobs, locks)
    return Services(
        session_factory=session_factory,
        settings=settings,
        clock=clock,
        ledger=ledger,
        snapshots=SnapshotService(session_factory, settings, clock),
        audit=audit,
        escrow=escrow,
        jobs=jobs,
        locks=locks,
        settlement=settlement,
        schedules=ScheduleEngine(session_factory, settings, clock, jobs, settlement, locks, calculator),
        reconciliation=ReconciliationEngine(session_factory, settings, clock, escrow, ledger, audit),
        integrity=PayrollIntegrityChecker(session_factory, settings, clock, jobs, calculator),
        recovery=RecoveryEngine(session_factory, settings, clock, jobs, settlement),
        recalculator=PayrollRecalculator(session_factory, settings, clock, jobs, settlement, locks, calculator, audit),
        calculator=calculator,
    )


def create_schema(bind) -> None:
    """Create every table; used by tests and local SQLite runs, Alembic owns production."""

    Base.metadata.create_all(bind)
