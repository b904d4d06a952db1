"""Payment record persistence: one row per gateway payment attempt."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, JSONType


class PaymentRecord(Base):
    """Current state of one payment attempt, keyed by the gateway `tx_ref`.

    `transaction_id` is generated at session creation and keys the ledger
    entry. Records created by a webhook or poll that arrived before the session
    row existed carry a synthetic `fallback_` id and `is_fallback=True`.
    """

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tx_ref: Mapped[str] = mapped_column(String, unique=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String, unique=True, index=True, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="MWK")
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    checkout_url: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    success_email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
