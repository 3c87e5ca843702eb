"""Balance reconciliation across the cache, the authoritative formula and the ledger.

Three independently derived numbers are compared per business:

* stored     - `businesses.escrow_balance_cents`, the hot-path cache
* calculated - deposits minus escrow-funded payouts, recomputed from rows
* ledger     - debits minus credits on the business ESCROW account

A stored/calculated drift is the only thing `auto_fix` may correct, and every
correction leaves an audit row. Calculated/ledger drift means the journal and
the operational tables disagree; it is recorded and never auto-corrected.
"""

from dataclasses import asdict, dataclass, field

from sqlalchemy import select

from payledger.common.errors import InvalidEntry, InvalidTransition
from payledger.common.logging import bind_log_context, logger
from payledger.common.metrics import reconciliation_discrepancies_total
from payledger.common.tracing import tracer
from payledger.services.escrow.models import Business
from payledger.services.outbox.service import enqueue_event
from payledger.services.reconciliation.models import (
    CALCULATED_VS_LEDGER,
    DISCREPANCY_APPROVED,
    DISCREPANCY_COMPENSATED,
    DISCREPANCY_OPEN,
    DISCREPANCY_RESOLVED,
    STORED_VS_CALCULATED,
    ReconciliationDiscrepancy,
)


@dataclass
class ReconciliationResult:
    business_id: str
    stored_balance_cents: int
    calculated_balance_cents: int
    ledger_balance_cents: int
    discrepancies: list[dict] = field(default_factory=list)
    fixed: bool = False
    frozen: bool = False

    @property
    def reconciled(self) -> bool:
        return not self.discrepancies

    @property
    def unresolved(self) -> int:
        return sum(1 for item in self.discrepancies if not item["auto_fixed"])

    def to_dict(self) -> dict:
        return {**asdict(self), "reconciled": self.reconciled}


@dataclass
class ReconciliationSummary:
    businesses_checked: int = 0
    issues: int = 0
    fixed: int = 0
    frozen: int = 0
    results: list[dict] = field(default_factory=list)

    @property
    def unresolved(self) -> int:
        return self.issues - self.fixed

    def to_dict(self) -> dict:
        return {**asdict(self), "unresolved": self.unresolved}


class ReconciliationEngine:
    """Detects balance drift and drives the discrepancy approval trail."""

    def __init__(self, session_factory, settings, clock, escrow, ledger, audit) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.escrow = escrow
        self.ledger = ledger
        self.audit = audit

    def reconcile_balance(self, business_id: str, auto_fix: bool = False) -> ReconciliationResult:
        with tracer.start_as_current_span("reconciliation.reconcile_balance") as span, bind_log_context(
            business_id=business_id
        ):
            span.set_attribute("reconciliation.business_id", business_id)
            span.set_attribute("reconciliation.auto_fix", auto_fix)
            result = self._reconcile(business_id, auto_fix)
            span.set_attribute("reconciliation.discrepancies", len(result.discrepancies))
            return result

    @staticmethod
    def _business(db, business_id: str, for_update: bool = False):
        query = select(Business).where(Business.business_id == business_id)
        if for_update:
            # Reservations and deposit credits update this row; hold it until the cache is overwritten.
            query = query.with_for_update()
        return db.execute(query).scalar_one_or_none()

    def _reconcile(self, business_id: str, auto_fix: bool) -> ReconciliationResult:
        tolerance = self.settings.reconciliation_tolerance_cents
        with self.session_factory() as db:
            business = self._business(db, business_id, for_update=auto_fix)
            if business is None:
                raise InvalidEntry(f"business {business_id} not found", business_id=business_id)
            stored = business.escrow_balance_cents
            calculated = self.escrow.calculate_balance_cents(db, business_id)
            ledger = self.escrow.ledger_balance_cents(db, business_id)
            result = ReconciliationResult(
                business_id=business_id,
                stored_balance_cents=stored,
                calculated_balance_cents=calculated,
                ledger_balance_cents=ledger,
            )

            stored_diff = abs(stored - calculated)
            if stored_diff > tolerance:
                fixed = auto_fix
                record = self._record(db, business, STORED_VS_CALCULATED, stored, calculated, ledger, fixed)
                if fixed:
                    self.escrow.set_cached_balance(db, business_id, calculated)
                    self._resolve_open(db, business_id, STORED_VS_CALCULATED, "auto-fixed by reconciliation")
                    self.audit.record(
                        db,
                        "reconciliation.balance_corrected",
                        "business",
                        business_id,
                        business_id=business_id,
                        details={
                            "discrepancy_id": record.id,
                            "old_balance_cents": stored,
                            "new_balance_cents": calculated,
                            "difference_cents": calculated - stored,
                        },
                    )
                    logger.warning(
                        "escrow_balance_corrected business_id=%s old=%s new=%s difference=%s",
                        business_id,
                        stored,
                        calculated,
                        calculated - stored,
                    )
                    result.fixed = True
                result.discrepancies.append(self._describe(record))

            ledger_diff = abs(calculated - ledger)
            if ledger_diff > tolerance:
                record = self._record(db, business, CALCULATED_VS_LEDGER, stored, calculated, ledger, False)
                result.discrepancies.append(self._describe(record))

            needs_freeze = any(
                not item["auto_fixed"] and abs(item["difference_cents"]) > self.settings.freeze_threshold_cents
                for item in result.discrepancies
            )
            if needs_freeze:
                self._freeze(db, business, result.discrepancies)
            elif result.fixed:
                self._maybe_unfreeze(db, business)
            result.frozen = bool(business.is_frozen)
            db.commit()

        if result.discrepancies:
            logger.warning(
                "reconciliation_discrepancy business_id=%s stored=%s calculated=%s ledger=%s fixed=%s frozen=%s",
                business_id,
                stored,
                calculated,
                ledger,
                result.fixed,
                result.frozen,
            )
        else:
            logger.info("reconciliation_ok business_id=%s balance=%s", business_id, calculated)
        return result

    def _record(self, db, business, discrepancy_type: str, stored: int, calculated: int, ledger: int, auto_fixed: bool):
        now = self.clock.now()
        if discrepancy_type == STORED_VS_CALCULATED:
            difference = calculated - stored
        else:
            difference = ledger - calculated
        record = None
        if not auto_fixed:
            # One open item per business and type; later runs refresh its figures.
            record = db.execute(
                select(ReconciliationDiscrepancy).where(
                    ReconciliationDiscrepancy.business_id == business.business_id,
                    ReconciliationDiscrepancy.discrepancy_type == discrepancy_type,
                    ReconciliationDiscrepancy.status == DISCREPANCY_OPEN,
                )
            ).scalars().first()
        if record is None:
            record = ReconciliationDiscrepancy(
                business_id=business.business_id,
                discrepancy_type=discrepancy_type,
                account_type="ESCROW",
                currency=business.currency,
                status=DISCREPANCY_RESOLVED if auto_fixed else DISCREPANCY_OPEN,
                auto_fixed=auto_fixed,
                detected_at=now,
            )
            if auto_fixed:
                record.resolved_by = "system"
                record.resolved_at = now
                record.resolution_notes = "auto-fixed by reconciliation"
            db.add(record)
        record.stored_balance_cents = stored
        record.calculated_balance_cents = calculated
        record.ledger_balance_cents = ledger
        record.difference_cents = difference
        db.flush()
        reconciliation_discrepancies_total.labels(
            discrepancy_type=discrepancy_type, auto_fixed=str(auto_fixed).lower()
        ).inc()
        enqueue_event(
            db,
            self.clock,
            "reconciliation.discrepancy_detected",
            aggregate_type="business",
            aggregate_id=business.business_id,
            business_id=business.business_id,
            payload={
                "discrepancy_id": record.id,
                "discrepancy_type": discrepancy_type,
                "difference_cents": difference,
                "auto_fixed": auto_fixed,
            },
        )
        return record

    @staticmethod
    def _describe(record: ReconciliationDiscrepancy) -> dict:
        return {
            "id": record.id,
            "type": record.discrepancy_type,
            "stored_cents": record.stored_balance_cents,
            "calculated_cents": record.calculated_balance_cents,
            "ledger_cents": record.ledger_balance_cents,
            "difference_cents": record.difference_cents,
            "status": record.status,
            "auto_fixed": record.auto_fixed,
        }

    def _resolve_open(self, db, business_id: str, discrepancy_type: str, notes: str) -> None:
        now = self.clock.now()
        for item in db.execute(
            select(ReconciliationDiscrepancy).where(
                ReconciliationDiscrepancy.business_id == business_id,
                ReconciliationDiscrepancy.discrepancy_type == discrepancy_type,
                ReconciliationDiscrepancy.status != DISCREPANCY_RESOLVED,
            )
        ).scalars():
            item.status = DISCREPANCY_RESOLVED
            item.resolved_by = "system"
            item.resolved_at = now
            item.resolution_notes = notes

    def _freeze(self, db, business, discrepancies: list[dict]) -> None:
        if business.is_frozen:
            return
        business.is_frozen = True
        business.frozen_at = self.clock.now()
        business.frozen_reason = "reconciliation_discrepancy"
        self.audit.record(
            db,
            "business.frozen",
            "business",
            business.business_id,
            business_id=business.business_id,
            details={"discrepancy_ids": [item["id"] for item in discrepancies if not item["auto_fixed"]]},
        )
        logger.warning("business_frozen business_id=%s reason=reconciliation_discrepancy", business.business_id)

    def _maybe_unfreeze(self, db, business, actor: str = "system") -> bool:
        if not business.is_frozen:
            return False
        db.flush()
        unresolved = db.execute(
            select(ReconciliationDiscrepancy.id).where(
                ReconciliationDiscrepancy.business_id == business.business_id,
                ReconciliationDiscrepancy.status != DISCREPANCY_RESOLVED,
            )
        ).first()
        if unresolved is not None:
            return False
        business.is_frozen = False
        business.frozen_at = None
        business.frozen_reason = None
        self.audit.record(db, "business.unfrozen", "business", business.business_id, business_id=business.business_id, actor=actor)
        logger.info("business_unfrozen business_id=%s", business.business_id)
        return True

    def reconcile_all(self, auto_fix: bool = False) -> ReconciliationSummary:
        """Reconcile every business and aggregate issue and fix counts."""

        with self.session_factory() as db:
            business_ids = db.execute(select(Business.business_id).order_by(Business.business_id)).scalars().all()
        summary = ReconciliationSummary()
        for business_id in business_ids:
            result = self.reconcile_balance(business_id, auto_fix=auto_fix)
            summary.businesses_checked += 1
            summary.issues += len(result.discrepancies)
            summary.fixed += len(result.discrepancies) - result.unresolved
            summary.frozen += int(result.frozen)
            summary.results.append(result.to_dict())
        logger.info(
            "reconciliation_complete businesses=%s issues=%s fixed=%s frozen=%s",
            summary.businesses_checked,
            summary.issues,
            summary.fixed,
            summary.frozen,
        )
        return summary

    def _load(self, db, discrepancy_id: str) -> ReconciliationDiscrepancy:
        record = db.get(ReconciliationDiscrepancy, discrepancy_id)
        if record is None:
            raise InvalidEntry(f"discrepancy {discrepancy_id} not found", discrepancy_id=discrepancy_id)
        return record

    def approve_discrepancy(self, discrepancy_id: str, actor: str, notes: str | None = None) -> ReconciliationDiscrepancy:
        with self.session_factory() as db:
            record = self._load(db, discrepancy_id)
            if record.status != DISCREPANCY_OPEN:
                raise InvalidTransition(f"cannot approve a {record.status} discrepancy", discrepancy_id=discrepancy_id)
            record.status = DISCREPANCY_APPROVED
            record.approved_by = actor
            record.approved_at = self.clock.now()
            if notes:
                record.resolution_notes = notes
            self.audit.record(
                db, "reconciliation.approved", "discrepancy", record.id, business_id=record.business_id, actor=actor
            )
            db.commit()
            return record

    def compensate_discrepancy(self, discrepancy_id: str, actor: str) -> ReconciliationDiscrepancy:
        """Write the authoritative balance into the cache for an approved item."""

        with self.session_factory() as db:
            record = self._load(db, discrepancy_id)
            if record.status != DISCREPANCY_APPROVED:
                raise InvalidTransition(
                    f"only approved discrepancies can be compensated ({record.status})", discrepancy_id=discrepancy_id
                )
            business = self._business(db, record.business_id, for_update=True)
            calculated = self.escrow.calculate_balance_cents(db, record.business_id)
            previous = business.escrow_balance_cents
            self.escrow.set_cached_balance(db, record.business_id, calculated)
            record.status = DISCREPANCY_COMPENSATED
            record.compensated_by = actor
            record.compensated_at = self.clock.now()
            self.audit.record(
                db,
                "reconciliation.compensated",
                "discrepancy",
                record.id,
                business_id=record.business_id,
                actor=actor,
                details={"old_balance_cents": previous, "new_balance_cents": calculated},
            )
            db.commit()
            return record

    def resolve_discrepancy(self, discrepancy_id: str, actor: str, notes: str | None = None) -> ReconciliationDiscrepancy:
        with self.session_factory() as db:
            record = self._load(db, discrepancy_id)
            if record.status == DISCREPANCY_RESOLVED:
                return record
            record.status = DISCREPANCY_RESOLVED
            record.resolved_by = actor
            record.resolved_at = self.clock.now()
            record.resolution_notes = notes or record.resolution_notes
            self.audit.record(
                db, "reconciliation.resolved", "discrepancy", record.id, business_id=record.business_id, actor=actor
            )
            business = db.get(Business, record.business_id)
            if business is not None:
                self._maybe_unfreeze(db, business, actor=actor)
            db.commit()
            return record

    def verify_ledger(self, limit: int | None = None) -> dict:
        return self.ledger.verify_balances(limit=limit)
