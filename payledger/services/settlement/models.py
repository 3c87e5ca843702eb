"""Settlement window model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from payledger.common.db import Base
from payledger.common.money import from_minor_units


WINDOW_PENDING = "pending"
WINDOW_PROCESSING = "processing"
WINDOW_PROCESSED = "processed"


class SettlementWindow(Base):
    """Time-boxed batch of jobs executed together."""

    __tablename__ = "settlement_windows"
    __table_args__ = (UniqueConstraint("window_type", "window_start", name="uq_settlement_window"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    window_type: Mapped[str] = mapped_column(String)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default=WINDOW_PENDING, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="ZAR")
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    run_token: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def total_amount(self) -> Decimal:
        return from_minor_units(self.total_amount_cents, self.currency)
