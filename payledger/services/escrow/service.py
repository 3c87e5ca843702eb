"""Escrow balance engine.

The authoritative balance is

    sum(authorized amount of confirmed/completed deposits)
    - sum(payout of escrow-funded jobs in succeeded/processing)
    - sum(payout of jobs whose funds were manually returned)

`businesses.escrow_balance_cents` caches it for hot paths. Every cached change
is paired with a ledger transaction on the business ESCROW account so the
ledger-derived balance tracks the authoritative one.
"""

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from payledger.common.clock import as_utc
from payledger.common.errors import (
    DiscrepancyDetected,
    InsufficientFunds,
    InvalidEntry,
    InvalidTransition,
    OptimisticLockConflict,
)
from payledger.common.logging import logger
from payledger.common.metrics import escrow_reservations_total
from payledger.common.money import apply_rate, from_minor_units
from payledger.common.state_machine import FAILED, PENDING, PROCESSING, SUCCEEDED
from payledger.services.escrow.models import (
    DEPOSIT_CONFIRMED,
    DEPOSIT_PENDING,
    FUNDED_DEPOSIT_STATUSES,
    Business,
    EscrowDeposit,
)
from payledger.services.jobs.models import PaymentJob, PayrollJob
from payledger.services.ledger.models import POSTING_POSTED


PAYOUT_COLUMNS = ((PayrollJob, PayrollJob.net_salary_cents), (PaymentJob, PaymentJob.amount_cents))
JOB_ACCOUNTS = {"payroll": "PAYROLL", "payment": "PAYMENT"}


class EscrowBalanceEngine:
    """Deposits, reservations and balance computation for business escrow."""

    def __init__(self, session_factory, settings, clock, ledger, audit) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self.ledger = ledger
        self.audit = audit

    def calculate_fee(self, amount_cents: int) -> int:
        return apply_rate(amount_cents, self.settings.deposit_fee_rate)

    def create_deposit(
        self, business_id: str, amount_cents: int, fee_cents: int | None = None, reference: str | None = None
    ) -> EscrowDeposit:
        """Register an incoming deposit; it funds nothing until confirmed."""

        if amount_cents <= 0:
            raise InvalidEntry("deposit amount must be positive", amount=amount_cents)
        fee = self.calculate_fee(amount_cents) if fee_cents is None else fee_cents
        if fee < 0 or fee > amount_cents:
            raise InvalidEntry("deposit fee must be between zero and the amount", fee=fee)
        with self.session_factory() as db:
            business = db.get(Business, business_id)
            if business is None:
                raise InvalidEntry(f"business {business_id} not found", business_id=business_id)
            deposit = EscrowDeposit(
                business_id=business_id,
                amount_cents=amount_cents,
                fee_cents=fee,
                authorized_cents=amount_cents - fee,
                currency=business.currency,
                status=DEPOSIT_PENDING,
                reference=reference,
                deposited_at=self.clock.now(),
                created_at=self.clock.now(),
            )
            db.add(deposit)
            db.commit()
            logger.info(
                "escrow_deposit_created deposit_id=%s business_id=%s amount=%s fee=%s",
                deposit.deposit_id,
                business_id,
                amount_cents,
                fee,
            )
            return deposit

    def confirm_deposit(self, deposit_id: str, actor: str = "system") -> EscrowDeposit:
        """Confirm a pending deposit, credit the cache and post it to the ledger."""

        with self.session_factory() as db:
            deposit = db.execute(
                select(EscrowDeposit).where(EscrowDeposit.deposit_id == deposit_id).with_for_update()
            ).scalar_one_or_none()
            if deposit is None:
                raise InvalidEntry(f"deposit {deposit_id} not found", deposit_id=deposit_id)
            if deposit.status in FUNDED_DEPOSIT_STATUSES:
                return deposit

            now = self.clock.now()
            claimed = db.execute(
                update(EscrowDeposit)
                .where(EscrowDeposit.deposit_id == deposit_id, EscrowDeposit.status == DEPOSIT_PENDING)
                .values(status=DEPOSIT_CONFIRMED, confirmed_at=now)
            )
            if claimed.rowcount != 1:
                db.rollback()
                return db.get(EscrowDeposit, deposit_id)
            set_committed_value(deposit, "status", DEPOSIT_CONFIRMED)
            set_committed_value(deposit, "confirmed_at", now)

            correlation_id = f"deposit:{deposit_id}"
            if deposit.authorized_cents > 0:
                self.ledger.record_transaction(
                    db,
                    business_id=deposit.business_id,
                    debit_account="ESCROW",
                    credit_account="BANK",
                    amount_minor_units=deposit.authorized_cents,
                    currency=deposit.currency,
                    description="Escrow deposit confirmed",
                    correlation_id=correlation_id,
                    reference_type="escrow_deposit",
                    reference_id=deposit_id,
                    posting_state=POSTING_POSTED,
                )
            self._adjust_cached_balance(db, deposit.business_id, deposit.authorized_cents)
            deposit.ledger_correlation_id = correlation_id
            self.audit.record(
                db,
                "escrow.deposit_confirmed",
                "escrow_deposit",
                deposit_id,
                business_id=deposit.business_id,
                actor=actor,
                details={"authorized_cents": deposit.authorized_cents, "fee_cents": deposit.fee_cents},
            )
            db.commit()
            logger.info(
                "escrow_deposit_confirmed deposit_id=%s business_id=%s authorized=%s",
                deposit_id,
                deposit.business_id,
                deposit.authorized_cents,
            )
            return deposit

    def _adjust_cached_balance(self, db, business_id: str, delta_cents: int) -> None:
        db.execute(
            update(Business)
            .where(Business.business_id == business_id)
            .values(escrow_balance_cents=Business.escrow_balance_cents + delta_cents, updated_at=self.clock.now())
        )

    def set_cached_balance(self, db, business_id: str, balance_cents: int) -> None:
        db.execute(
            update(Business)
            .where(Business.business_id == business_id)
            .values(escrow_balance_cents=balance_cents, updated_at=self.clock.now())
        )

    def _job_payout_sum(self, db, business_id: str, conditions) -> int:
        total = 0
        for model, column in PAYOUT_COLUMNS:
            total += int(
                db.execute(
                    select(func.coalesce(func.sum(column), 0)).where(model.business_id == business_id, *conditions(model))
                ).scalar_one()
            )
        return total

    def calculate_balance_cents(self, db, business_id: str, include_pending: bool = False) -> int:
        """Authoritative balance in minor units, bypassing the cache."""

        deposits = int(
            db.execute(
                select(func.coalesce(func.sum(EscrowDeposit.authorized_cents), 0)).where(
                    EscrowDeposit.business_id == business_id,
                    EscrowDeposit.status.in_(FUNDED_DEPOSIT_STATUSES),
                )
            ).scalar_one()
        )
        used = self._job_payout_sum(
            db,
            business_id,
            lambda m: (m.status.in_((SUCCEEDED, PROCESSING)), m.escrow_deposit_id.is_not(None)),
        )
        returned = self._job_payout_sum(
            db,
            business_id,
            lambda m: (m.funds_returned_manually_at.is_not(None), m.escrow_deposit_id.is_not(None)),
        )
        balance = deposits - used - returned
        if include_pending:
            balance -= self._pending_payouts(db, business_id)
        return balance

    def _pending_payouts(self, db, business_id: str) -> int:
        return self._job_payout_sum(
            db, business_id, lambda m: (m.status == PENDING, m.permanently_failed_at.is_(None))
        )

    def ledger_balance_cents(self, db, business_id: str) -> int:
        return self.ledger.account_balance(db, business_id, "ESCROW")

    def get_available_balance(self, business_id: str, use_cache: bool = True, include_pending: bool = False) -> Decimal:
        """Cached fast path or authoritative computation, in major units."""

        with self.session_factory() as db:
            business = db.get(Business, business_id)
            if business is None:
                raise InvalidEntry(f"business {business_id} not found", business_id=business_id)
            if use_cache:
                balance = business.escrow_balance_cents
                if include_pending:
                    balance -= self._pending_payouts(db, business_id)
            else:
                balance = self.calculate_balance_cents(db, business_id, include_pending=include_pending)
            return from_minor_units(balance, business.currency)

    def recalculate_balance(self, business_id: str) -> Decimal:
        """Ground-truth balance used by reconciliation; never writes the cache."""

        with self.session_factory() as db:
            business = db.get(Business, business_id)
            if business is None:
                raise InvalidEntry(f"business {business_id} not found", business_id=business_id)
            return from_minor_units(self.calculate_balance_cents(db, business_id), business.currency)

    def reserve_funds(self, db, job) -> tuple[str | None, str | None]:
        """Fund a job leaving `pending`; returns (reservation correlation id, deposit id).

        Runs inside the caller's transition transaction with the business row
        locked, so concurrent reservations for one business serialize.
        """

        if job.reservation_correlation_id:
            return job.reservation_correlation_id, job.escrow_deposit_id

        business = db.execute(
            select(Business).where(Business.business_id == job.business_id).with_for_update()
        ).scalar_one()
        if business.is_frozen:
            raise DiscrepancyDetected(
                "business is frozen pending reconciliation", business_id=job.business_id, job_id=job.id
            )
        deposit_id = db.execute(
            select(EscrowDeposit.deposit_id)
            .where(
                EscrowDeposit.business_id == job.business_id,
                EscrowDeposit.status.in_(FUNDED_DEPOSIT_STATUSES),
            )
            .order_by(EscrowDeposit.confirmed_at, EscrowDeposit.created_at)
            .limit(1)
        ).scalar_one_or_none()
        available = self.calculate_balance_cents(db, job.business_id)
        if deposit_id is None or available < job.payout_cents:
            escrow_reservations_total.labels(outcome="insufficient").inc()
            raise InsufficientFunds(
                "insufficient escrow balance",
                business_id=job.business_id,
                job_id=job.id,
                available_cents=available,
                required_cents=job.payout_cents,
            )

        correlation_id = None
        if job.payout_cents > 0:
            correlation_id = f"{job.job_type}_job:{job.id}:{uuid4().hex[:12]}"
            self.ledger.record_transaction(
                db,
                business_id=job.business_id,
                debit_account=JOB_ACCOUNTS[job.job_type],
                credit_account="ESCROW",
                amount_minor_units=job.payout_cents,
                currency=business.currency,
                description=f"Escrow funding for {job.job_type} job",
                correlation_id=correlation_id,
                reference_type=f"{job.job_type}_job",
                reference_id=job.id,
            )
            self._adjust_cached_balance(db, job.business_id, -job.payout_cents)
        escrow_reservations_total.labels(outcome="reserved").inc()
        logger.info(
            "escrow_reserved job=%s deposit_id=%s amount=%s available_before=%s",
            job.job_ref,
            deposit_id,
            job.payout_cents,
            available,
        )
        return correlation_id, deposit_id

    def settle_reservation(self, db, job) -> int:
        """Post the funding transaction of a job that succeeded."""

        if not job.reservation_correlation_id:
            return 0
        return self.ledger.post_transaction(db, job.reservation_correlation_id)

    def release_reservation(self, db, job, reason: str) -> bool:
        """Reverse the funding transaction and restore the cache."""

        if not job.reservation_correlation_id:
            return False
        reversed_entries = self.ledger.reverse_transaction(db, job.reservation_correlation_id, reason)
        if reversed_entries:
            self._adjust_cached_balance(db, job.business_id, job.payout_cents)
        logger.info("escrow_released job=%s amount=%s reason=%s", job.job_ref, job.payout_cents, reason)
        return bool(reversed_entries)

    def record_fee_release(self, job_model, job_id: str, released_by: str):
        """Stamp the platform fee for a job as released; repeat calls are no-ops."""

        with self.session_factory() as db:
            job = db.get(job_model, job_id)
            if job is None:
                raise InvalidEntry(f"{job_model.job_type} job {job_id} not found", job_id=job_id)
            if job.fee_released_manually_at is not None:
                return job
            if job.escrow_deposit_id is None:
                raise InvalidTransition("job was not funded from escrow", job_id=job_id)
            now = self.clock.now()
            self._stamp(db, job, fee_released_manually_at=now, released_by=released_by)
            self.audit.record(
                db,
                "escrow.fee_released",
                f"{job.job_type}_job",
                job.id,
                business_id=job.business_id,
                actor=released_by,
                details={"escrow_deposit_id": job.escrow_deposit_id},
            )
            db.commit()
            return job

    def record_fund_return(self, job_model, job_id: str, released_by: str):
        """Return a failed job's principal from escrow to the business bank account."""

        with self.session_factory() as db:
            job = db.get(job_model, job_id)
            if job is None:
                raise InvalidEntry(f"{job_model.job_type} job {job_id} not found", job_id=job_id)
            if job.funds_returned_manually_at is not None:
                return job
            if job.status != FAILED or job.escrow_deposit_id is None:
                raise InvalidTransition(
                    "funds can only be returned for failed escrow-funded jobs", job_id=job_id, status=job.status
                )
            available = self.calculate_balance_cents(db, job.business_id)
            if available < job.payout_cents:
                raise InsufficientFunds(
                    "escrow balance cannot cover the return",
                    job_id=job_id,
                    available_cents=available,
                    required_cents=job.payout_cents,
                )
            now = self.clock.now()
            self._stamp(db, job, funds_returned_manually_at=now, released_by=released_by)
            if job.payout_cents > 0:
                self.ledger.record_transaction(
                    db,
                    business_id=job.business_id,
                    debit_account="BANK",
                    credit_account="ESCROW",
                    amount_minor_units=job.payout_cents,
                    currency=job.currency,
                    description=f"Manual fund return for {job.job_type} job",
                    reference_type=f"{job.job_type}_job",
                    reference_id=job.id,
                    posting_state=POSTING_POSTED,
                )
                self._adjust_cached_balance(db, job.business_id, -job.payout_cents)
            self.audit.record(
                db,
                "escrow.funds_returned",
                f"{job.job_type}_job",
                job.id,
                business_id=job.business_id,
                actor=released_by,
                details={"amount_cents": job.payout_cents, "returned_at": as_utc(now).isoformat()},
            )
            db.commit()
            return job

    def _stamp(self, db, job, **values) -> None:
        """Version-checked write of manual lifecycle timestamps."""

        model = type(job)
        values = {"version": job.version + 1, "updated_at": self.clock.now(), **values}
        result = db.execute(update(model).where(model.id == job.id, model.version == job.version).values(**values))
        if result.rowcount != 1:
            raise OptimisticLockConflict(f"{job.job_ref} changed concurrently", job_id=job.id, expected_version=job.version)
        for name, value in values.items():
            set_committed_value(job, name, value)
