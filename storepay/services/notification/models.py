"""In-app notification persistence."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, JSONType


class Notification(Base):
    """One in-app notification for a customer or the store admins."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    notification_type: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    notification_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
