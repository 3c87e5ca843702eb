"""Append-only double-entry ledger.

Writers take the caller's session so a ledger write commits or rolls back with
the job or deposit change that caused it. Sequence numbers come from one
counter row, so the row lock taken by the increment serializes writers and the
global order is auditable.
"""

from uuid import uuid4

from sqlalchemy import case, func, select, update

from payledger.common.errors import AlreadyReversed, InvalidEntry
from payledger.common.logging import logger
from payledger.common.metrics import ledger_entries_total, ledger_reversals_total
from payledger.common.money import CURRENCY_DIVISORS
from payledger.services.ledger.models import (
    ACCOUNT_TYPES,
    CREDIT,
    DEBIT,
    POSTING_PENDING,
    POSTING_POSTED,
    POSTING_REVERSED,
    Account,
    LedgerEntry,
    LedgerSequence,
    account_key,
)


LEDGER_SEQUENCE = "ledger"


def signed_amount_expr():
    """SQL expression: +amount for debits, -amount for credits."""

    return case(
        (LedgerEntry.transaction_type == DEBIT, LedgerEntry.amount_minor_units),
        else_=-LedgerEntry.amount_minor_units,
    )


class LedgerStore:
    """Owns ledger appends, postings, reversals and balance queries."""

    def __init__(self, session_factory, settings, clock) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    def ensure_account(self, db, business_id: str | None, account_type: str, currency: str) -> Account:
        if account_type not in ACCOUNT_TYPES:
            raise InvalidEntry(f"unknown account type {account_type}", account_type=account_type)
        key = account_key(business_id, account_type)
        account = db.get(Account, key)
        if account is None:
            account = Account(
                account_id=key,
                business_id=business_id,
                account_type=account_type,
                currency=currency,
                created_at=self.clock.now(),
            )
            db.add(account)
            db.flush()
        return account

    def next_sequence(self, db) -> int:
        """Increment and return the ledger-wide sequence inside the caller's transaction."""

        result = db.execute(
            update(LedgerSequence)
            .where(LedgerSequence.name == LEDGER_SEQUENCE)
            .values(value=LedgerSequence.value + 1)
        )
        if result.rowcount == 0:
            db.add(LedgerSequence(name=LEDGER_SEQUENCE, value=1))
            db.flush()
            return 1
        return db.execute(
            select(LedgerSequence.value).where(LedgerSequence.name == LEDGER_SEQUENCE)
        ).scalar_one()

    def append(
        self,
        db,
        business_id: str | None,
        account_type: str,
        transaction_type: str,
        amount_minor_units: int,
        currency: str,
        correlation_id: str,
        description: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        details: dict | None = None,
        posting_state: str = POSTING_PENDING,
        reversal_of_id: str | None = None,
        entry_id: str | None = None,
    ) -> LedgerEntry:
        """Validate and append one leg."""

        if transaction_type not in (DEBIT, CREDIT):
            raise InvalidEntry(f"unknown transaction type {transaction_type}", transaction_type=transaction_type)
        if not isinstance(amount_minor_units, int) or amount_minor_units <= 0:
            raise InvalidEntry("ledger amount must be a positive number of minor units", amount=amount_minor_units)
        if currency not in CURRENCY_DIVISORS:
            raise InvalidEntry(f"unsupported currency {currency}", currency=currency)
        account = self.ensure_account(db, business_id, account_type, currency)
        if account.currency != currency:
            raise InvalidEntry(
                f"currency {currency} does not match account {account.account_id} ({account.currency})",
                account_id=account.account_id,
                currency=currency,
            )

        now = self.clock.now()
        entry = LedgerEntry(
            entry_id=entry_id or str(uuid4()),
            sequence_number=self.next_sequence(db),
            correlation_id=correlation_id,
            account_id=account.account_id,
            business_id=business_id,
            account_type=account_type,
            transaction_type=transaction_type,
            amount_minor_units=amount_minor_units,
            currency=currency,
            posting_state=posting_state,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            details=details,
            reversal_of_id=reversal_of_id,
            posted_at=now if posting_state == POSTING_POSTED else None,
            created_at=now,
        )
        db.add(entry)
        db.flush()
        ledger_entries_total.labels(account_type=account_type, transaction_type=transaction_type).inc()
        return entry

    def record_transaction(
        self,
        db,
        business_id: str | None,
        debit_account: str,
        credit_account: str,
        amount_minor_units: int,
        currency: str,
        description: str,
        correlation_id: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        details: dict | None = None,
        posting_state: str = POSTING_PENDING,
    ) -> list[LedgerEntry]:
        """Append a matched debit and credit under one correlation id."""

        correlation_id = correlation_id or str(uuid4())
        common = dict(
            business_id=business_id,
            amount_minor_units=amount_minor_units,
            currency=currency,
            correlation_id=correlation_id,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            details=details,
            posting_state=posting_state,
        )
        debit = self.append(db, account_type=debit_account, transaction_type=DEBIT, **common)
        credit = self.append(db, account_type=credit_account, transaction_type=CREDIT, **common)
        logger.info(
            "ledger_transaction correlation_id=%s debit=%s credit=%s amount=%s",
            correlation_id,
            debit_account,
            credit_account,
            amount_minor_units,
        )
        return [debit, credit]

    def mark_posted(self, db, entry_id: str) -> LedgerEntry:
        """PENDING -> POSTED; already POSTED is a no-op."""

        entry = db.get(LedgerEntry, entry_id)
        if entry is None:
            raise InvalidEntry(f"ledger entry {entry_id} not found", entry_id=entry_id)
        if entry.posting_state == POSTING_POSTED:
            return entry
        if entry.posting_state != POSTING_PENDING:
            raise InvalidEntry(f"entry {entry_id} is {entry.posting_state}", entry_id=entry_id)
        now = self.clock.now()
        db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.entry_id == entry_id, LedgerEntry.posting_state == POSTING_PENDING)
            .values(posting_state=POSTING_POSTED, posted_at=now)
        )
        entry.posting_state = POSTING_POSTED
        entry.posted_at = now
        return entry

    def post_transaction(self, db, correlation_id: str) -> int:
        """Post every pending leg of one transaction; returns the count posted."""

        entries = db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.correlation_id == correlation_id, LedgerEntry.posting_state == POSTING_PENDING)
            .order_by(LedgerEntry.sequence_number)
        ).scalars().all()
        for entry in entries:
            self.mark_posted(db, entry.entry_id)
        return len(entries)

    def reverse(self, db, entry_id: str, reason: str) -> LedgerEntry:
        """Append an opposite entry and link both directions in one transaction.

        Both the original and the reversal end up REVERSED, so posted-only views
        drop the pair and all-entry views net it to zero.
        """

        original = db.get(LedgerEntry, entry_id)
        if original is None:
            raise InvalidEntry(f"ledger entry {entry_id} not found", entry_id=entry_id)
        if original.reversal_of_id is not None:
            raise InvalidEntry(f"entry {entry_id} is itself a reversal", entry_id=entry_id)
        if original.reversed_by_id is not None:
            raise AlreadyReversed(f"entry {entry_id} already reversed", entry_id=entry_id)

        reversal_id = str(uuid4())
        claimed = db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.entry_id == entry_id, LedgerEntry.reversed_by_id.is_(None))
            .values(reversed_by_id=reversal_id, posting_state=POSTING_REVERSED)
        )
        if claimed.rowcount != 1:
            raise AlreadyReversed(f"entry {entry_id} already reversed", entry_id=entry_id)

        reversal = self.append(
            db,
            business_id=original.business_id,
            account_type=original.account_type,
            transaction_type=CREDIT if original.transaction_type == DEBIT else DEBIT,
            amount_minor_units=original.amount_minor_units,
            currency=original.currency,
            correlation_id=original.correlation_id,
            description=f"Reversal: {reason}",
            reference_type=original.reference_type,
            reference_id=original.reference_id,
            details={"reason": reason},
            posting_state=POSTING_REVERSED,
            reversal_of_id=entry_id,
            entry_id=reversal_id,
        )
        original.reversed_by_id = reversal_id
        original.posting_state = POSTING_REVERSED
        ledger_reversals_total.inc()
        logger.info("ledger_reversal entry_id=%s reversal_id=%s reason=%s", entry_id, reversal.entry_id, reason)
        return reversal

    def reverse_transaction(self, db, correlation_id: str, reason: str) -> list[LedgerEntry]:
        """Reverse every unreversed leg in one correlation group."""

        originals = db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.correlation_id == correlation_id,
                LedgerEntry.reversal_of_id.is_(None),
                LedgerEntry.reversed_by_id.is_(None),
            )
            .order_by(LedgerEntry.sequence_number)
        ).scalars().all()
        return [self.reverse(db, entry.entry_id, reason) for entry in originals]

    def account_balance(
        self, db, business_id: str | None, account_type: str, posted_only: bool = False
    ) -> int:
        """Debits minus credits, in minor units."""

        query = select(func.coalesce(func.sum(signed_amount_expr()), 0)).where(
            LedgerEntry.account_id == account_key(business_id, account_type)
        )
        if posted_only:
            query = query.where(LedgerEntry.posting_state == POSTING_POSTED)
        return int(db.execute(query).scalar_one())

    def verify_balances(self, limit: int | None = None) -> dict:
        """Check every correlation group balances and stays in one currency."""

        with self.session_factory() as db:
            query = (
                select(
                    LedgerEntry.correlation_id,
                    func.sum(case((LedgerEntry.transaction_type == DEBIT, LedgerEntry.amount_minor_units), else_=0)).label(
                        "debits"
                    ),
                    func.sum(case((LedgerEntry.transaction_type == CREDIT, LedgerEntry.amount_minor_units), else_=0)).label(
                        "credits"
                    ),
                    func.count(func.distinct(LedgerEntry.currency)).label("currencies"),
                    func.count(LedgerEntry.entry_id).label("entry_count"),
                )
                .group_by(LedgerEntry.correlation_id)
                .order_by(LedgerEntry.correlation_id)
            )
            if limit:
                query = query.limit(limit)
            rows = db.execute(query).all()

        imbalanced = []
        currency_mismatches = []
        for row in rows:
            if int(row.currencies) > 1:
                currency_mismatches.append({"correlation_id": row.correlation_id})
            if int(row.debits or 0) != int(row.credits or 0):
                imbalanced.append(
                    {
                        "correlation_id": row.correlation_id,
                        "debits": int(row.debits or 0),
                        "credits": int(row.credits or 0),
                        "entry_count": int(row.entry_count),
                    }
                )
        if imbalanced or currency_mismatches:
            logger.error(
                "ledger_verification_failed imbalanced=%s currency_mismatches=%s",
                len(imbalanced),
                len(currency_mismatches),
            )
        return {
            "transactions_checked": len(rows),
            "balanced": not imbalanced and not currency_mismatches,
            "imbalanced_count": len(imbalanced),
            "imbalanced_transactions": imbalanced,
            "currency_mismatches": currency_mismatches,
        }

    def replay_account(self, business_id: str | None, account_type: str, from_sequence: int = 0) -> list[dict]:
        """Ordered entries for one account with a running balance."""

        with self.session_factory() as db:
            entries = db.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.account_id == account_key(business_id, account_type),
                    LedgerEntry.sequence_number >= from_sequence,
                )
                .order_by(LedgerEntry.sequence_number)
            ).scalars().all()
        running = 0
        replay = []
        for entry in entries:
            running += entry.signed_minor_units
            replay.append(
                {
                    "entry_id": entry.entry_id,
                    "sequence_number": entry.sequence_number,
                    "correlation_id": entry.correlation_id,
                    "transaction_type": entry.transaction_type,
                    "amount_minor_units": entry.amount_minor_units,
                    "posting_state": entry.posting_state,
                    "running_balance": running,
                }
            )
        return replay
