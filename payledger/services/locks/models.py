"""Lease table backing the database lock driver."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from payledger.common.db import Base


class LockLease(Base):
    """One named lock; a row past `expires_at` may be taken over."""

    __tablename__ = "lock_leases"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
