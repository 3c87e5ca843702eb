"""Ledger database models: accounts, append-only entries, sequence and snapshots."""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from payledger.common.db import Base, JSONType
from payledger.common.money import from_minor_units


ACCOUNT_TYPES = ("ESCROW", "PAYROLL", "PAYMENT", "FEES", "TAXES", "BANK")
DEBIT = "DEBIT"
CREDIT = "CREDIT"
POSTING_PENDING = "PENDING"
POSTING_POSTED = "POSTED"
POSTING_REVERSED = "REVERSED"


def account_key(business_id: str | None, account_type: str) -> str:
    return f"{business_id or 'system'}:{account_type}"


class Account(Base):
    """Logical account (system-level or business-owned) used for postings."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    business_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    account_type: Mapped[str] = mapped_column(String, index=True)
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LedgerSequence(Base):
    """Single-row counter that totally orders every ledger write."""

    __tablename__ = "ledger_sequences"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LedgerEntry(Base):
    """One debit or credit leg; never deleted, only posted or reversed."""

    __tablename__ = "ledger_entries"

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    sequence_number: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    business_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    account_type: Mapped[str] = mapped_column(String, index=True)
    transaction_type: Mapped[str] = mapped_column(String)
    amount_minor_units: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    posting_state: Mapped[str] = mapped_column(String, default=POSTING_PENDING, index=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    reversal_of_id: Mapped[str | None] = mapped_column(
        ForeignKey("ledger_entries.entry_id"), nullable=True, unique=True
    )
    reversed_by_id: Mapped[str | None] = mapped_column(String, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor_units, self.currency)

    @property
    def signed_minor_units(self) -> int:
        return self.amount_minor_units if self.transaction_type == DEBIT else -self.amount_minor_units


class BalanceSnapshot(Base):
    """Point-in-time balance per business/account type/date with tamper checksum."""

    __tablename__ = "balance_snapshots"
    __table_args__ = (
        UniqueConstraint("account_type", "business_id", "snapshot_date", name="uq_balance_snapshot"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    account_type: Mapped[str] = mapped_column(String)
    snapshot_date: Mapped[date] = mapped_column(Date, index=True)
    balance_minor_units: Mapped[int] = mapped_column(Integer)
    sequence_number: Mapped[int] = mapped_column(Integer)
    entry_count: Mapped[int] = mapped_column(Integer)
    checksum: Mapped[str] = mapped_column(String(64))
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
