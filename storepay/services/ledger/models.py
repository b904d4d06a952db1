"""Ledger database model: append-only financial entries."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, JSONType


class LedgerEntry(Base):
    """Immutable financial fact.

    Settlement entries use a deterministic `entry_id` derived from the payment
    transaction id, so the primary key rejects a second settlement of the same
    payment. Reversals are separate rows pointing at the original.
    """

    __tablename__ = "ledger_entries"

    entry_id: Mapped[str] = mapped_column(String, primary_key=True)
    entry_type: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True, default="confirmed")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3))
    order_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    description: Mapped[str] = mapped_column(String, default="")
    entry_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    reversed_entry_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
