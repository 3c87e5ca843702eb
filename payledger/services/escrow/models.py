"""Escrow models: funding businesses and their deposits."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payledger.common.db import Base
from payledger.common.money import from_minor_units


DEPOSIT_PENDING = "pending"
DEPOSIT_CONFIRMED = "confirmed"
DEPOSIT_COMPLETED = "completed"
FUNDED_DEPOSIT_STATUSES = (DEPOSIT_CONFIRMED, DEPOSIT_COMPLETED)


class Business(Base):
    """Owner of escrow funds, schedules and jobs.

    `escrow_balance_cents` is a cache; the authoritative figure is always derived
    from deposits and jobs.
    """

    __tablename__ = "businesses"

    business_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    currency: Mapped[str] = mapped_column(String(3), default="ZAR")
    escrow_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    frozen_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def escrow_balance(self) -> Decimal:
        return from_minor_units(self.escrow_balance_cents, self.currency)


class EscrowDeposit(Base):
    """Cash inflow from a business, net of platform fee once confirmed."""

    __tablename__ = "escrow_deposits"

    deposit_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    fee_cents: Mapped[int] = mapped_column(Integer)
    authorized_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, default=DEPOSIT_PENDING, index=True)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)
    ledger_correlation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    deposited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents, self.currency)

    @property
    def fee_amount(self) -> Decimal:
        return from_minor_units(self.fee_cents, self.currency)

    @property
    def authorized_amount(self) -> Decimal:
        return from_minor_units(self.authorized_cents, self.currency)
