"""Daily balance snapshots with checksums, used to skip full ledger replays."""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from payledger.common.errors import LedgerCoreError
from payledger.common.logging import logger
from payledger.services.escrow.models import Business
from payledger.services.ledger.models import POSTING_POSTED, BalanceSnapshot, LedgerEntry, account_key
from payledger.services.ledger.service import signed_amount_expr


@dataclass
class SnapshotResult:
    snapshot_date: str
    account_type: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def snapshot_checksum(entries: list[LedgerEntry]) -> str:
    payload = "|".join(
        f"{e.entry_id}:{e.sequence_number}:{e.transaction_type}:{e.amount_minor_units}" for e in entries
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def end_of_day(day: date) -> datetime:
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)


class SnapshotService:
    """Creates, reads and verifies `BalanceSnapshot` rows."""

    def __init__(self, session_factory, settings, clock) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    def _posted_entries(self, db, business_id: str | None, account_type: str, cutoff: datetime, max_sequence=None):
        query = select(LedgerEntry).where(
            LedgerEntry.account_id == account_key(business_id, account_type),
            LedgerEntry.posting_state == POSTING_POSTED,
            LedgerEntry.created_at < cutoff,
        )
        if max_sequence is not None:
            query = query.where(LedgerEntry.sequence_number <= max_sequence)
        return db.execute(query.order_by(LedgerEntry.sequence_number)).scalars().all()

    def create_snapshot(
        self, business_id: str | None, account_type: str = "ESCROW", snapshot_date: date | None = None
    ) -> BalanceSnapshot:
        """Snapshot POSTED entries up to the end of `snapshot_date`; re-runs overwrite."""

        snapshot_date = snapshot_date or (self.clock.now().date() - timedelta(days=1))
        with self.session_factory() as db:
            entries = self._posted_entries(db, business_id, account_type, end_of_day(snapshot_date))
            balance = sum(e.signed_minor_units for e in entries)
            sequence_number = entries[-1].sequence_number if entries else 0
            currency = entries[0].currency if entries else self.settings.default_currency
            values = dict(
                balance_minor_units=balance,
                sequence_number=sequence_number,
                entry_count=len(entries),
                checksum=snapshot_checksum(entries),
                currency=currency,
                created_at=self.clock.now(),
            )
            snapshot = db.execute(
                select(BalanceSnapshot).where(
                    BalanceSnapshot.business_id == business_id,
                    BalanceSnapshot.account_type == account_type,
                    BalanceSnapshot.snapshot_date == snapshot_date,
                )
            ).scalar_one_or_none()
            if snapshot is None:
                snapshot = BalanceSnapshot(
                    business_id=business_id, account_type=account_type, snapshot_date=snapshot_date, **values
                )
                db.add(snapshot)
            else:
                for key, value in values.items():
                    setattr(snapshot, key, value)
            db.commit()
            logger.info(
                "balance_snapshot business_id=%s account=%s date=%s balance=%s seq=%s",
                business_id,
                account_type,
                snapshot_date,
                balance,
                sequence_number,
            )
            return snapshot

    def create_snapshots(
        self, snapshot_date: date | None = None, account_type: str = "ESCROW", business_id: str | None = None
    ) -> SnapshotResult:
        """Snapshot one or every business; failures are counted, not raised."""

        snapshot_date = snapshot_date or (self.clock.now().date() - timedelta(days=1))
        with self.session_factory() as db:
            query = select(Business.business_id).order_by(Business.business_id)
            if business_id:
                query = query.where(Business.business_id == business_id)
            business_ids = db.execute(query).scalars().all()

        result = SnapshotResult(snapshot_date=snapshot_date.isoformat(), account_type=account_type)
        for current_id in business_ids:
            result.processed += 1
            try:
                self.create_snapshot(current_id, account_type, snapshot_date)
                result.succeeded += 1
            except (LedgerCoreError, SQLAlchemyError) as exc:
                logger.error("balance_snapshot_failed business_id=%s error=%s", current_id, exc)
                result.failed += 1
                result.errors.append({"business_id": current_id, "error": str(exc)})
        return result

    def balance_from_snapshot(
        self, business_id: str | None, account_type: str = "ESCROW", as_of: date | None = None
    ) -> int:
        """Latest snapshot balance plus POSTED entries sequenced after it."""

        as_of = as_of or self.clock.now().date()
        with self.session_factory() as db:
            snapshot = db.execute(
                select(BalanceSnapshot)
                .where(
                    BalanceSnapshot.business_id == business_id,
                    BalanceSnapshot.account_type == account_type,
                    BalanceSnapshot.snapshot_date <= as_of,
                )
                .order_by(BalanceSnapshot.snapshot_date.desc())
                .limit(1)
            ).scalar_one_or_none()
            base = snapshot.balance_minor_units if snapshot else 0
            after_sequence = snapshot.sequence_number if snapshot else 0
            delta = db.execute(
                select(func.coalesce(func.sum(signed_amount_expr()), 0)).where(
                    LedgerEntry.account_id == account_key(business_id, account_type),
                    LedgerEntry.posting_state == POSTING_POSTED,
                    LedgerEntry.sequence_number > after_sequence,
                    LedgerEntry.created_at < end_of_day(as_of),
                )
            ).scalar_one()
        return int(base) + int(delta)

    def verify_snapshot(self, snapshot_id: str) -> bool:
        """Recompute the checksum over the entries the snapshot covered."""

        with self.session_factory() as db:
            snapshot = db.get(BalanceSnapshot, snapshot_id)
            if snapshot is None:
                return False
            entries = self._posted_entries(
                db,
                snapshot.business_id,
                snapshot.account_type,
                end_of_day(snapshot.snapshot_date),
                max_sequence=snapshot.sequence_number,
            )
            valid = snapshot_checksum(entries) == snapshot.checksum
        if not valid:
            logger.error("balance_snapshot_checksum_mismatch snapshot_id=%s", snapshot_id)
        return valid
