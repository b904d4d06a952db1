"""Store settings document edited by the admin CMS."""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, JSONType


class StoreSettings(Base):
    """Keyed JSON settings document; the settlement path reads key `default`."""

    __tablename__ = "store_settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    document: Mapped[dict] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
