"""Reconciliation discrepancy records with their approval trail."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payledger.common.db import Base
from payledger.common.money import from_minor_units


DISCREPANCY_OPEN = "open"
DISCREPANCY_APPROVED = "approved"
DISCREPANCY_COMPENSATED = "compensated"
DISCREPANCY_RESOLVED = "resolved"

STORED_VS_CALCULATED = "stored_vs_calculated"
CALCULATED_VS_LEDGER = "calculated_vs_ledger"


class ReconciliationDiscrepancy(Base):
    """Recorded mismatch between stored, calculated and ledger balances."""

    __tablename__ = "reconciliation_discrepancies"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(String, index=True)
    discrepancy_type: Mapped[str] = mapped_column(String)
    account_type: Mapped[str] = mapped_column(String, default="ESCROW")
    currency: Mapped[str] = mapped_column(String(3), default="ZAR")
    stored_balance_cents: Mapped[int] = mapped_column(Integer)
    calculated_balance_cents: Mapped[int] = mapped_column(Integer)
    ledger_balance_cents: Mapped[int] = mapped_column(Integer)
    difference_cents: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default=DISCREPANCY_OPEN, index=True)
    auto_fixed: Mapped[bool] = mapped_column(Boolean, default=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    compensated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    compensated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(String, nullable=True)

    @property
    def difference(self) -> Decimal:
        return from_minor_units(self.difference_cents, self.currency)
